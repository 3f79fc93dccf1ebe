import pytest

from authtftp.credentials import CredentialStore, check_password, hash_password


@pytest.fixture
def store():
    return CredentialStore({'alice': 'secret'})


def test_valid_credentials(store):
    assert store.verify('alice', 'secret')


def test_wrong_password(store):
    assert not store.verify('alice', 'wrong')


def test_unknown_user(store):
    assert not store.verify('mallory', 'secret')


def test_store_is_read_only(store):
    with pytest.raises(TypeError):
        store._credentials['bob'] = 'x'
    assert 'bob' not in store


def test_store_copies_its_input():
    source = {'alice': 'secret'}
    store = CredentialStore(source)
    source['alice'] = 'changed'
    assert store.verify('alice', 'secret')


def test_load_from_file(tmp_path):
    path = tmp_path / 'credentials.txt'
    path.write_text(
        '# users\n'
        'alice:secret\n'
        '\n'
        ' bob : hunter2 \n'
        'no-separator\n'
        ':orphan\n'
    )
    store = CredentialStore.from_file(str(path))
    assert len(store) == 2
    assert store.verify('alice', 'secret')
    assert store.verify('bob', 'hunter2')
    assert 'no-separator' not in store


def test_missing_file_gives_empty_store(tmp_path):
    store = CredentialStore.from_file(str(tmp_path / 'absent.txt'))
    assert len(store) == 0
    assert not store.verify('alice', 'secret')


def test_hashed_secret_verifies():
    stored = hash_password('secret')
    assert stored.startswith('scrypt$')
    assert check_password(stored, 'secret')
    assert not check_password(stored, 'wrong')


def test_hash_is_salted():
    assert hash_password('secret') != hash_password('secret')


def test_hashed_entry_in_file(tmp_path):
    path = tmp_path / 'credentials.txt'
    path.write_text(f"alice:{hash_password('secret', salt=b'0' * 16)}\n")
    store = CredentialStore.from_file(str(path))
    assert store.verify('alice', 'secret')
    assert not store.verify('alice', 'Secret')


def test_malformed_hash_never_matches():
    assert not check_password('scrypt$zz$zz', 'secret')
    assert not check_password('scrypt$only-two', 'secret')
