#!/usr/bin/env python3
"""
Authenticated TFTP Server
Serves one request at a time: an auth request, a read or a write is
handled to completion before the next datagram is looked at.
"""

import argparse
import collections
import logging
import os
import socket
from typing import Optional, Tuple

from .constants import (
    AUTH_FAILED,
    AUTH_SUCCESS,
    BACKLOG_SIZE,
    DEFAULT_BLOCK_SIZE,
    DEFAULT_CREDENTIALS_FILE,
    DEFAULT_PORT,
    DEFAULT_ROOT_DIR,
    DEFAULT_TIMEOUT,
    LOG_FORMAT,
    MAX_BLOCK_NUMBER,
    MAX_PACKET_SIZE,
    MAX_RETRIES,
)
from .credentials import CredentialStore
from .packet import (
    Ack,
    AuthRequest,
    AuthResponse,
    Data,
    DecodeError,
    Packet,
    ReadRequest,
    WriteRequest,
    decode,
)
from .transport import TransferError, send_with_retry

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5  # seconds between checks of the running flag


class TFTPServer:
    def __init__(self, host='0.0.0.0', port=DEFAULT_PORT, root_dir=DEFAULT_ROOT_DIR,
                 credentials: Optional[CredentialStore] = None, timeout=DEFAULT_TIMEOUT,
                 max_retries=MAX_RETRIES, strict_acks=False):
        self.host = host
        self.port = port
        self.root_dir = root_dir
        self.credentials = credentials if credentials is not None else CredentialStore()
        self.timeout = timeout
        self.max_retries = max_retries
        self.strict_acks = strict_acks
        self.socket = None
        self.running = False
        self._backlog = collections.deque()

        # Create root directory if it doesn't exist
        os.makedirs(root_dir, exist_ok=True)

    @property
    def address(self) -> Tuple[str, int]:
        return self.socket.getsockname()

    def bind(self):
        """Create the server socket and bind it"""
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.socket.bind((self.host, self.port))
        return self.address

    def start(self):
        """Start the TFTP server and dispatch requests until stopped"""
        if self.socket is None:
            self.bind()
        self.running = True

        host, port = self.address
        logger.info("TFTP Server started on %s:%d", host, port)
        logger.info("Root directory: %s", self.root_dir)

        try:
            while self.running:
                try:
                    data, client_addr = self._next_datagram()
                except socket.timeout:
                    continue
                except OSError as e:
                    if not self.running:
                        break
                    logger.error("Socket error: %s", e)
                    continue

                self.handle_complete_request(data, client_addr)
        finally:
            self.close()

    def stop(self):
        """Ask the dispatcher loop to exit"""
        self.running = False

    def close(self):
        """Release the server socket"""
        self.running = False
        if self.socket:
            self.socket.close()
            self.socket = None
            logger.info("TFTP Server stopped")

    def _next_datagram(self) -> Tuple[bytes, Tuple[str, int]]:
        if self._backlog:
            return self._backlog.popleft()
        self.socket.settimeout(POLL_INTERVAL)
        return self.socket.recvfrom(MAX_PACKET_SIZE)

    def _defer(self, data: bytes, addr: Tuple[str, int]):
        """Hold a datagram from another client until the current request completes"""
        if len(self._backlog) >= BACKLOG_SIZE:
            logger.warning("Backlog full, dropping packet from %s", addr)
            return
        logger.debug("Deferring packet from %s until current request completes", addr)
        self._backlog.append((data, addr))

    def _take_deferred(self, client_addr: Tuple[str, int]) -> Optional[bytes]:
        """Remove and return the oldest held datagram from client_addr, if any"""
        for index, (data, addr) in enumerate(self._backlog):
            if addr == client_addr:
                del self._backlog[index]
                return data
        return None

    def _receive_from(self, client_addr: Tuple[str, int]) -> Packet:
        """Wait for the next well formed packet from the client being served"""
        self.socket.settimeout(self.timeout)
        while True:
            # The client may have sent ahead while an earlier request was served
            data = self._take_deferred(client_addr)
            if data is None:
                data, addr = self.socket.recvfrom(MAX_PACKET_SIZE)
                if addr != client_addr:
                    self._defer(data, addr)
                    continue
            try:
                return decode(data)
            except DecodeError as e:
                logger.warning("Discarding malformed packet from %s: %s", client_addr, e)

    def handle_complete_request(self, data: bytes, client_addr: Tuple[str, int]):
        """Route one inbound datagram to its handler and run it to completion"""
        try:
            packet = decode(data)
        except DecodeError as e:
            logger.warning("Discarding packet from %s: %s", client_addr, e)
            return

        try:
            if isinstance(packet, ReadRequest):
                self.handle_read_request(packet, client_addr)
            elif isinstance(packet, WriteRequest):
                self.handle_write_request(packet, client_addr)
            elif isinstance(packet, AuthRequest):
                self.handle_auth_request(packet, client_addr)
            else:
                logger.warning("Ignoring unexpected %s from %s", type(packet).__name__, client_addr)
        except (OSError, TransferError) as e:
            logger.error("Error handling request from %s: %s", client_addr, e)

    def resolve_path(self, filename: str) -> Optional[str]:
        """Map a requested filename into the root directory, None if it escapes"""
        root = os.path.realpath(self.root_dir)
        path = os.path.realpath(os.path.join(root, filename))
        if os.path.commonpath([root, path]) != root or path == root:
            return None
        return path

    def handle_auth_request(self, request: AuthRequest, client_addr: Tuple[str, int]):
        """Check credentials and answer with AUTH_SUCCESS or AUTH_FAILED"""
        success = self.credentials.verify(request.username, request.password)
        response = AuthResponse(AUTH_SUCCESS if success else AUTH_FAILED)
        logger.info("Authentication request for user %s from %s: %s",
                    request.username, client_addr, response.status)
        send_with_retry(self.socket, response, client_addr, self.max_retries)

    def handle_read_request(self, request: ReadRequest, client_addr: Tuple[str, int]):
        """Handle read request (RRQ)"""
        filepath = self.resolve_path(request.filename)
        if filepath is None or not os.path.isfile(filepath):
            logger.warning("File not found: %s", request.filename)
            return

        logger.info("Read request: %s from %s", request.filename, client_addr)
        self.send_file(filepath, client_addr)

    def handle_write_request(self, request: WriteRequest, client_addr: Tuple[str, int]):
        """Handle write request (WRQ)"""
        filepath = self.resolve_path(request.filename)
        if filepath is None:
            logger.warning("Refusing write outside root directory: %s", request.filename)
            return

        logger.info("Write request: %s from %s", request.filename, client_addr)
        self.receive_file(filepath, client_addr)

    def send_file(self, filepath: str, client_addr: Tuple[str, int]) -> bool:
        """Send file to client, one acknowledged block at a time"""
        with open(filepath, 'rb') as f:
            block_num = 1
            while True:
                packet = Data(block_num, f.read(DEFAULT_BLOCK_SIZE))
                if not self._send_block(packet, client_addr):
                    logger.error("Transfer of %s to %s aborted at block %d",
                                 filepath, client_addr, block_num)
                    return False
                if packet.is_last:
                    break
                if block_num == MAX_BLOCK_NUMBER:
                    logger.error("File %s exceeds %d blocks", filepath, MAX_BLOCK_NUMBER)
                    return False
                block_num += 1

        logger.info("File sent successfully to %s", client_addr)
        return True

    def _send_block(self, packet: Data, client_addr: Tuple[str, int]) -> bool:
        """Send one DATA packet and wait for it to be acknowledged"""
        send_with_retry(self.socket, packet, client_addr, self.max_retries)
        logger.debug("Sent block %d with %d bytes", packet.block, len(packet.payload))

        attempts = 0
        while attempts < self.max_retries:
            try:
                reply = self._receive_from(client_addr)
            except socket.timeout:
                attempts += 1
                logger.warning("Timeout waiting for ACK %d (attempt %d/%d)",
                               packet.block, attempts, self.max_retries)
                if attempts < self.max_retries:
                    send_with_retry(self.socket, packet, client_addr, self.max_retries)
                continue

            if not isinstance(reply, Ack):
                logger.warning("Expected ACK %d, got %s", packet.block, type(reply).__name__)
                continue

            if reply.block != packet.block:
                if self.strict_acks:
                    attempts += 1
                    logger.warning("Got ACK %d while waiting for ACK %d, resending",
                                   reply.block, packet.block)
                    if attempts < self.max_retries:
                        send_with_retry(self.socket, packet, client_addr, self.max_retries)
                    continue
                logger.debug("Accepting ACK %d for block %d", reply.block, packet.block)
            return True

        return False

    def receive_file(self, filepath: str, client_addr: Tuple[str, int]) -> bool:
        """Receive file from client"""
        with open(filepath, 'wb') as f:
            block_num = 0
            # ACK 0 primes the exchange
            send_with_retry(self.socket, Ack(block_num), client_addr, self.max_retries)

            attempts = 0
            while True:
                try:
                    packet = self._receive_from(client_addr)
                except socket.timeout:
                    attempts += 1
                    logger.warning("Timeout waiting for block %d (attempt %d/%d)",
                                   block_num + 1, attempts, self.max_retries)
                    if attempts >= self.max_retries:
                        logger.error("Transfer of %s from %s aborted after block %d",
                                     filepath, client_addr, block_num)
                        return False
                    continue

                if not isinstance(packet, Data):
                    logger.warning("Expected DATA packet, got %s", type(packet).__name__)
                    continue

                if packet.block != block_num + 1:
                    logger.warning("Unexpected block number: expected %d, but got %d",
                                   block_num + 1, packet.block)
                    continue

                attempts = 0
                f.write(packet.payload)
                f.flush()
                block_num = packet.block
                logger.debug("Written block %d", block_num)
                send_with_retry(self.socket, Ack(block_num), client_addr, self.max_retries)

                if packet.is_last:
                    break

        logger.info("File received successfully from %s", client_addr)
        return True


def main():
    """Main function to run TFTP server"""
    parser = argparse.ArgumentParser(description='Authenticated TFTP Server')
    parser.add_argument('--host', default='0.0.0.0', help='Server host')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT, help='Server port')
    parser.add_argument('--root-dir', default=DEFAULT_ROOT_DIR, help='Root directory for files')
    parser.add_argument('--credentials', default=DEFAULT_CREDENTIALS_FILE,
                        help='File of username:password lines')
    parser.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT,
                        help='Seconds to wait for each client packet')
    parser.add_argument('--strict-acks', action='store_true',
                        help='Resend a block when its ACK carries the wrong block number')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'])

    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    server = TFTPServer(args.host, args.port, args.root_dir,
                        credentials=CredentialStore.from_file(args.credentials),
                        timeout=args.timeout, strict_acks=args.strict_acks)

    try:
        server.start()
    except KeyboardInterrupt:
        logger.info("Shutting down server...")
        server.close()


if __name__ == '__main__':
    main()
