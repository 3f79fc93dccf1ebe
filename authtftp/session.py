"""
Client side transfer sessions.

A download is a stop-and-wait loop: wait for block n, write it, ack it to
whoever sent it, move on to n + 1 until a short block arrives. An upload
pushes every block to the server without waiting for acknowledgments.
"""

import enum
import logging
import socket
from typing import BinaryIO, Iterator, Optional, Tuple

from .constants import (
    DEFAULT_BLOCK_SIZE,
    DEFAULT_MODE,
    DEFAULT_TIMEOUT,
    MAX_BLOCK_NUMBER,
    MAX_PACKET_SIZE,
    MAX_RETRIES,
)
from .packet import Ack, Data, DecodeError, ReadRequest, WriteRequest, decode
from .transport import ReceiveTimeout, TransferError, send_with_retry

logger = logging.getLogger(__name__)


class TransferState(enum.Enum):
    AWAITING_BLOCK = 'awaiting_block'
    SENDING = 'sending'
    DONE = 'done'
    ABORTED = 'aborted'


def block_count(size: int, block_size: int = DEFAULT_BLOCK_SIZE) -> int:
    """Number of DATA packets needed for a payload, terminal block included"""
    return size // block_size + 1


def iter_blocks(data: bytes, block_size: int = DEFAULT_BLOCK_SIZE) -> Iterator[Data]:
    """Split data into numbered blocks, always ending with a short block"""
    block = 1
    offset = 0
    while True:
        chunk = data[offset:offset + block_size]
        yield Data(block, chunk)
        if len(chunk) < block_size:
            return
        offset += block_size
        block += 1


class DownloadSession:
    """Receive one file from the server, block by block"""

    def __init__(self, sock: socket.socket, server_address: Tuple[str, int],
                 filename: str, out: BinaryIO, timeout: float = DEFAULT_TIMEOUT,
                 max_retries: int = MAX_RETRIES, mode: str = DEFAULT_MODE):
        self.sock = sock
        self.server_address = server_address
        self.filename = filename
        self.out = out
        self.timeout = timeout
        self.max_retries = max_retries
        self.mode = mode

        self.state = TransferState.AWAITING_BLOCK
        self.block = 1
        self.peer: Optional[Tuple[str, int]] = None
        self.blocks_received = 0
        self.bytes_received = 0
        self.timeouts = 0
        self.discarded = 0

    def run(self) -> TransferState:
        """Request the file and drive the block loop to DONE or ABORTED"""
        self.sock.settimeout(self.timeout)
        try:
            send_with_retry(self.sock, ReadRequest(self.filename, self.mode),
                            self.server_address, self.max_retries)
            logger.info("Read request for %s sent to %s", self.filename, self.server_address)

            while self.state is TransferState.AWAITING_BLOCK:
                packet, addr = self._receive_block()
                self._accept_block(packet, addr)

        except TransferError as e:
            logger.error("Download of %s aborted at block %d: %s", self.filename, self.block, e)
            self.state = TransferState.ABORTED

        return self.state

    def _receive_block(self) -> Tuple[Data, Tuple[str, int]]:
        """Wait for the expected block; only timeouts consume the retry budget"""
        attempts = 0
        while attempts < self.max_retries:
            try:
                raw, addr = self.sock.recvfrom(MAX_PACKET_SIZE)
            except socket.timeout:
                attempts += 1
                self.timeouts += 1
                logger.warning("Timeout waiting for block %d (attempt %d/%d)",
                               self.block, attempts, self.max_retries)
                continue

            packet = self._match(raw, addr)
            if packet is not None:
                return packet, addr
            self.discarded += 1

        raise ReceiveTimeout(f"No data for block {self.block} after {self.max_retries} attempts")

    def _match(self, raw: bytes, addr: Tuple[str, int]) -> Optional[Data]:
        if self.peer is not None and addr != self.peer:
            logger.warning("Ignoring packet from unexpected address %s", addr)
            return None
        try:
            packet = decode(raw)
        except DecodeError as e:
            logger.warning("Discarding malformed packet from %s: %s", addr, e)
            return None
        if not isinstance(packet, Data):
            logger.warning("Expected DATA packet, got %s", type(packet).__name__)
            return None
        if packet.block != self.block:
            logger.warning("Expected block %d, but received block %d", self.block, packet.block)
            return None
        return packet

    def _accept_block(self, packet: Data, addr: Tuple[str, int]) -> None:
        # The server may answer from another port; stick to it from here on
        self.peer = addr
        if packet.payload:
            self.out.write(packet.payload)
        self.blocks_received += 1
        self.bytes_received += len(packet.payload)
        logger.debug("Received block %d with %d bytes", packet.block, len(packet.payload))

        send_with_retry(self.sock, Ack(packet.block), addr, self.max_retries)

        if packet.is_last:
            self.out.flush()
            self.state = TransferState.DONE
            logger.info("Downloaded %s: %d bytes in %d blocks",
                        self.filename, self.bytes_received, self.blocks_received)
        elif self.block == MAX_BLOCK_NUMBER:
            raise TransferError(f"File exceeds {MAX_BLOCK_NUMBER} blocks")
        else:
            self.block += 1


class UploadSession:
    """Push one file to the server without waiting for acknowledgments"""

    def __init__(self, sock: socket.socket, server_address: Tuple[str, int],
                 filename: str, data: bytes, max_retries: int = MAX_RETRIES,
                 mode: str = DEFAULT_MODE):
        self.sock = sock
        self.server_address = server_address
        self.filename = filename
        self.data = data
        self.max_retries = max_retries
        self.mode = mode

        self.state = TransferState.SENDING
        self.blocks_sent = 0

    def run(self) -> TransferState:
        """Send the write request followed by every block in order"""
        blocks = block_count(len(self.data))
        if blocks > MAX_BLOCK_NUMBER:
            logger.error("Cannot upload %s: %d blocks exceeds the %d block limit",
                         self.filename, blocks, MAX_BLOCK_NUMBER)
            self.state = TransferState.ABORTED
            return self.state

        try:
            send_with_retry(self.sock, WriteRequest(self.filename, self.mode),
                            self.server_address, self.max_retries)
            logger.info("Write request for %s sent to %s", self.filename, self.server_address)

            for packet in iter_blocks(self.data):
                send_with_retry(self.sock, packet, self.server_address, self.max_retries)
                self.blocks_sent += 1
                logger.debug("Sent block %d with %d bytes", packet.block, len(packet.payload))

        except TransferError as e:
            logger.error("Upload of %s aborted after %d blocks: %s",
                         self.filename, self.blocks_sent, e)
            self.state = TransferState.ABORTED
            return self.state

        self.state = TransferState.DONE
        logger.info("Uploaded %s: %d bytes in %d blocks", self.filename, len(self.data), blocks)
        return self.state
