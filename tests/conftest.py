import os
import socket
import threading
import time

import pytest

from authtftp.credentials import CredentialStore
from authtftp.tftp_client import TFTPClient
from authtftp.tftp_server import TFTPServer


class FakeSocket:
    """Scripted stand-in for a UDP socket

    ``incoming`` holds ``(data, addr)`` pairs or exceptions to raise from
    ``recvfrom``; once it runs dry every receive times out.
    """

    def __init__(self, incoming=(), send_failures=0):
        self.incoming = list(incoming)
        self.send_failures = send_failures
        self.sent = []
        self.send_attempts = 0
        self.recv_calls = 0
        self.timeout = None

    def settimeout(self, timeout):
        self.timeout = timeout

    def sendto(self, data, addr):
        self.send_attempts += 1
        if self.send_failures:
            self.send_failures -= 1
            raise OSError("Network is unreachable")
        self.sent.append((bytes(data), addr))
        return len(data)

    def recvfrom(self, bufsize):
        self.recv_calls += 1
        if not self.incoming:
            raise socket.timeout("timed out")
        item = self.incoming.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def wait_for(predicate, timeout=5.0):
    """Poll until predicate() is true or the deadline passes"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def server_root(tmp_path):
    root = tmp_path / 'server_files'
    root.mkdir()
    return root


@pytest.fixture
def client_root(tmp_path):
    return tmp_path / 'client_files'


@pytest.fixture
def start_server(server_root):
    """Run TFTPServer instances on ephemeral loopback ports for the test"""
    running = []

    def _start(**kwargs):
        kwargs.setdefault('credentials', CredentialStore({'alice': 'secret'}))
        kwargs.setdefault('timeout', 1)
        kwargs.setdefault('max_retries', 3)
        server = TFTPServer('127.0.0.1', 0, str(server_root), **kwargs)
        server.bind()
        thread = threading.Thread(target=server.start, daemon=True)
        thread.start()
        running.append((server, thread))
        return server

    yield _start

    for server, thread in running:
        server.stop()
        thread.join(timeout=5)


@pytest.fixture
def tftp_server(start_server):
    return start_server()


@pytest.fixture
def client(tftp_server, client_root):
    host, port = tftp_server.address
    c = TFTPClient(host, port, local_dir=str(client_root), timeout=0.5, max_retries=3)
    yield c
    c.disconnect()


@pytest.fixture
def raw_socket():
    """Plain UDP socket for speaking the wire protocol by hand"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(('127.0.0.1', 0))
    sock.settimeout(3)
    yield sock
    sock.close()


def create_test_files(test_dir, files):
    """Write name -> content pairs into test_dir"""
    os.makedirs(test_dir, exist_ok=True)
    for filename, content in files.items():
        with open(os.path.join(test_dir, filename), 'wb') as f:
            f.write(content)
