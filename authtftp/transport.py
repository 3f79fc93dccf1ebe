"""
Send-side retry and the transfer error taxonomy.

Only the ``sendto`` call itself is retried here. Waiting for replies and
counting timeouts is left to the session loops.
"""

import logging
import socket
from typing import Tuple, Union

from .constants import MAX_RETRIES
from .packet import Packet, encode

logger = logging.getLogger(__name__)


class TransferError(Exception):
    """Base class for errors that abort a transfer"""


class TransportExhausted(TransferError):
    """Sending a datagram failed on every attempt"""


class ReceiveTimeout(TransferError):
    """No usable reply arrived within the retry budget"""


def send_with_retry(sock: socket.socket, packet: Union[Packet, bytes],
                    address: Tuple[str, int], max_retries: int = MAX_RETRIES) -> None:
    """Send a packet, retrying immediately when the send call fails"""
    data = packet if isinstance(packet, (bytes, bytearray)) else encode(packet)
    attempts = 0
    while attempts < max_retries:
        try:
            sock.sendto(data, address)
            return
        except OSError as e:
            attempts += 1
            logger.warning("Send to %s failed (%s), attempt %d/%d",
                           address, e, attempts, max_retries)
    raise TransportExhausted(f"Failed to send packet after {max_retries} attempts")
