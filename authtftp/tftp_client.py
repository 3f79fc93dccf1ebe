#!/usr/bin/env python3
"""
Authenticated TFTP Client
Logs in with a username/password, then downloads (get) or uploads (put)
a single file from the client directory.
"""

import argparse
import getpass
import logging
import os
import socket
import sys
from typing import Optional, Tuple

from .constants import (
    DEFAULT_CLIENT_DIR,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT,
    LOG_FORMAT,
    MAX_PACKET_SIZE,
    MAX_RETRIES,
)
from .packet import AuthRequest, AuthResponse, DecodeError, decode
from .session import DownloadSession, TransferState, UploadSession
from .transport import TransportExhausted, send_with_retry

logger = logging.getLogger(__name__)


class TFTPClient:
    def __init__(self, server_host='localhost', server_port=DEFAULT_PORT,
                 local_dir=DEFAULT_CLIENT_DIR, timeout=DEFAULT_TIMEOUT, max_retries=MAX_RETRIES):
        self.server_host = server_host
        self.server_port = server_port
        self.local_dir = local_dir
        self.timeout = timeout
        self.max_retries = max_retries
        self.socket = None

        os.makedirs(local_dir, exist_ok=True)

    @property
    def server_address(self) -> Tuple[str, int]:
        return (self.server_host, self.server_port)

    def connect(self):
        """Create UDP socket for TFTP communication"""
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.socket.settimeout(self.timeout)

    def disconnect(self):
        """Close the socket"""
        if self.socket:
            self.socket.close()
            self.socket = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *exc_info):
        self.disconnect()

    def authenticate(self, username: str, password: str) -> bool:
        """Send credentials and wait once for the server's verdict"""
        if not self.socket:
            self.connect()

        try:
            send_with_retry(self.socket, AuthRequest(username, password),
                            self.server_address, self.max_retries)
            self.socket.settimeout(self.timeout)
            data, _ = self.socket.recvfrom(MAX_PACKET_SIZE)
        except socket.timeout:
            logger.error("Authentication timeout")
            return False
        except (TransportExhausted, ValueError) as e:
            logger.error("Authentication request failed: %s", e)
            return False

        try:
            response = decode(data)
        except DecodeError:
            logger.warning("Unexpected authentication reply: %r", data[:32])
            return False

        success = isinstance(response, AuthResponse) and response.success
        logger.info("Authentication %s for user %s", 'succeeded' if success else 'failed', username)
        return success

    def get_file(self, remote_filename: str, local_filename: Optional[str] = None) -> bool:
        """Download a file from the TFTP server"""
        if not self.socket:
            self.connect()

        local_path = os.path.join(self.local_dir, local_filename or remote_filename)
        try:
            with open(local_path, 'wb') as f:
                session = DownloadSession(self.socket, self.server_address, remote_filename, f,
                                          timeout=self.timeout, max_retries=self.max_retries)
                state = session.run()
        except OSError as e:
            logger.error("Cannot write %s: %s", local_path, e)
            return False

        if state is TransferState.DONE:
            logger.info("File downloaded successfully: %s", local_path)
            return True
        return False

    def put_file(self, local_filename: str, remote_filename: Optional[str] = None) -> bool:
        """Upload a file to the TFTP server"""
        if not self.socket:
            self.connect()

        local_path = os.path.join(self.local_dir, local_filename)
        if not os.path.isfile(local_path):
            logger.error("Local file not found: %s", local_path)
            return False

        try:
            with open(local_path, 'rb') as f:
                data = f.read()
        except OSError as e:
            logger.error("Cannot read %s: %s", local_path, e)
            return False

        session = UploadSession(self.socket, self.server_address,
                                remote_filename or os.path.basename(local_filename), data,
                                max_retries=self.max_retries)
        if session.run() is TransferState.DONE:
            logger.info("File uploaded successfully: %s", local_path)
            return True
        return False


def main():
    """Main function for TFTP client"""
    parser = argparse.ArgumentParser(description='Authenticated TFTP Client')
    parser.add_argument('server', help='TFTP server host')
    parser.add_argument('action', choices=['get', 'put'], help='Action: get or put')
    parser.add_argument('filename', help='Filename')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT, help='TFTP server port')
    parser.add_argument('--local-dir', default=DEFAULT_CLIENT_DIR, help='Client file directory')
    parser.add_argument('--user', help='Username (prompted if omitted)')
    parser.add_argument('--password', help='Password (prompted if omitted)')
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT,
                        help='Seconds to wait for each server packet')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'])

    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    username = args.user if args.user is not None else input('Enter username: ')
    password = args.password if args.password is not None else getpass.getpass('Enter password: ')

    client = TFTPClient(args.server, args.port, args.local_dir, timeout=args.timeout)

    try:
        if not client.authenticate(username, password):
            logger.error("Authentication failed. Exiting.")
            sys.exit(1)

        if args.action == 'get':
            success = client.get_file(args.filename)
        else:
            success = client.put_file(args.filename)

        if not success:
            sys.exit(1)

    except KeyboardInterrupt:
        logger.info("Operation cancelled")
        sys.exit(1)
    finally:
        client.disconnect()


if __name__ == '__main__':
    main()
