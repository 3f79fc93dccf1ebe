"""
Protocol constants and defaults shared by the authenticated TFTP
client and server.
"""

# TFTP Opcodes
OPCODE_RRQ = 1    # Read Request
OPCODE_WRQ = 2    # Write Request
OPCODE_DATA = 3   # Data
OPCODE_ACK = 4    # Acknowledgment
OPCODE_AUTH = 5   # Authentication Request

# Authentication replies (raw text, no opcode)
AUTH_TAG = 'AUTH'
AUTH_SUCCESS = 'AUTH_SUCCESS'
AUTH_FAILED = 'AUTH_FAILED'

# TFTP Constants
DEFAULT_PORT = 1069   # not the registered TFTP port 69
DEFAULT_BLOCK_SIZE = 512
MAX_PACKET_SIZE = 516  # 4 bytes header + 512 bytes data
MAX_BLOCK_NUMBER = 65535
DEFAULT_MODE = 'octet'

DEFAULT_TIMEOUT = 10  # seconds
MAX_RETRIES = 5
BACKLOG_SIZE = 1024  # datagrams held from other clients during a transfer

DEFAULT_CLIENT_DIR = 'client_files'
DEFAULT_ROOT_DIR = './files'
DEFAULT_CREDENTIALS_FILE = 'credentials.txt'

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
