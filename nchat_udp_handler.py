# Copyright [2025] [ecki]
# SPDX-License-Identifier: Apache-2.0

"""
NChat UDP Handler Module

Sends UDP datagrams to arbitrary addresses and, independently, listens on a
local port for incoming datagrams. Every received datagram is timestamped and
appended to a log file by a background thread.

Log line format:
    [YYYY-MM-DD HH:MM:SS.mmm] FROM <ip>:<port>: <text or <BINARY DATA: N bytes>>
"""

import errno
import logging
import pathlib
import socket
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple, Union

import PySignal

import nchat_ip

logger = logging.getLogger(__name__)

# Constants
DEFAULT_OUTPUT_FILE = "received_messages.log"
BIND_ADDRESS = "0.0.0.0"
RECV_TIMEOUT = 0.1
SEND_TIMEOUT = 3.0
RECV_BUFFER_SIZE = 65535
WRITE_BUFFER_SIZE = 8192
RECV_ERROR_BACKOFF = 0.1
BINARY_PLACEHOLDER = "<BINARY DATA: {} bytes>"

UNREACHABLE_ERRNOS = (errno.ENETUNREACH, errno.EHOSTUNREACH)


class UDPHandlerError(Exception):
    """Base exception for UDP handler operations."""
    pass


class ReceiverAlreadyRunningError(UDPHandlerError):
    """Raised when a receiver is started twice on the same handler."""
    pass


class InvalidPortError(UDPHandlerError):
    """Raised when port number is invalid."""
    pass


class InvalidAddressError(UDPHandlerError, ValueError):
    """Raised when a send target is not a valid ip:port address."""
    pass


class InvalidMessageError(UDPHandlerError, ValueError):
    """Raised when a text message cannot be encoded for sending."""
    pass


class DestinationUnreachableError(UDPHandlerError):
    """Raised when a send times out or the destination cannot be reached."""
    pass


class SendError(UDPHandlerError):
    """Raised for any other socket error while sending."""
    pass


@dataclass(frozen=True)
class LogEntry:
    """One received datagram."""

    timestamp: datetime
    source: Tuple[str, int]
    payload: bytes

    @property
    def text(self) -> str:
        """Payload as UTF-8 text, or a placeholder naming the byte count."""
        try:
            return self.payload.decode("utf-8")
        except UnicodeDecodeError:
            return BINARY_PLACEHOLDER.format(len(self.payload))

    def format(self) -> str:
        stamp = self.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        millis = self.timestamp.microsecond // 1000
        source = nchat_ip.format_socket_address(self.source)
        return f"[{stamp}.{millis:03d}] FROM {source}: {self.text}\n"


class UdpMessageHandler:
    """
    UDP message sender plus an optional background receiver.

    The outbound socket is bound to an ephemeral port at construction and
    keeps that port for the lifetime of the handler. The receiver owns its
    own listening socket and log writer; it cooperates with the controller
    only through the running flag and the signals below.

    Signals:
        status_message: Emitted from the receive thread with a status or
            error report (message: str)
        message_received: Emitted once per received datagram after it has
            been written (entry: LogEntry)

    Thread-safe: start_receiver/stop_receiver are serialized by a lock,
    send_message may be called from any thread.
    """

    status_message = PySignal.ClassSignal()
    message_received = PySignal.ClassSignal()

    def __init__(
            self,
            output_file: Union[str, pathlib.Path] = DEFAULT_OUTPUT_FILE,
            recv_timeout: float = RECV_TIMEOUT,
            send_timeout: float = SEND_TIMEOUT
    ):
        """
        Initialize the handler.

        Args:
            output_file: Path of the log file received datagrams are appended to
            recv_timeout: Poll interval of the receive loop in seconds
            send_timeout: Upper bound for a single send in seconds

        Raises:
            OSError: If the socket cannot be bound or the log file cannot be created
        """
        self._recv_timeout = recv_timeout
        self._send_timeout = send_timeout
        self._output_file = pathlib.Path(output_file)

        self._send_socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self._send_socket.bind((BIND_ADDRESS, 0))
            self._send_socket.settimeout(recv_timeout)

            self._output_file.parent.mkdir(parents=True, exist_ok=True)
            # Append mode creates the file without truncating it
            with open(self._output_file, "a", encoding="utf-8"):
                pass
        except OSError as e:
            logger.error("Failed to initialize UDP handler: %s", e)
            self._send_socket.close()
            raise

        self._lock = threading.Lock()
        self._running = threading.Event()
        self._receiver_thread: Optional[threading.Thread] = None
        self._receive_port: Optional[int] = None
        self._closed = False

        logger.info("UdpMessageHandler sending from port %d, logging to %s",
                    self.local_send_port, self._output_file)

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit with cleanup."""
        self.close()
        return False

    @property
    def local_send_port(self) -> int:
        """Local port of the outbound socket."""
        return self._send_socket.getsockname()[1]

    @property
    def receive_port(self) -> Optional[int]:
        """Port the receiver is bound to, or None when not receiving."""
        return self._receive_port if self.is_receiving() else None

    @property
    def output_file(self) -> pathlib.Path:
        return self._output_file

    def is_receiving(self) -> bool:
        thread = self._receiver_thread
        return thread is not None and thread.is_alive()

    def start_receiver(self, port: int) -> None:
        """
        Start listening for datagrams on all interfaces.

        Args:
            port: Local port to bind; 0 lets the OS pick one

        Raises:
            ReceiverAlreadyRunningError: If a receiver is already active
            InvalidPortError: If the port is not in 0..65535
            OSError: If the port cannot be bound
        """
        with self._lock:
            if self.is_receiving():
                raise ReceiverAlreadyRunningError(
                    f"Receiver already running on port {self._receive_port}"
                )

            port = self._validate_port(port)

            recv_socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                recv_socket.bind((BIND_ADDRESS, port))
                recv_socket.settimeout(self._recv_timeout)
            except OSError as e:
                logger.error("Failed to bind receiver to port %d: %s", port, e)
                recv_socket.close()
                raise

            bound_port = recv_socket.getsockname()[1]

            self._running.set()
            self._receive_port = bound_port

            thread = threading.Thread(
                target=self._receive_loop,
                args=(recv_socket, bound_port),
                daemon=True,
                name=f"UdpMessageHandler-Receive-{bound_port}"
            )
            thread.start()
            self._receiver_thread = thread

        logger.info("Receiver thread started on port %d", bound_port)

    def stop_receiver(self) -> None:
        """
        Stop the receiver and wait for its thread to finish.

        Calling this when no receiver is active does nothing. Once it
        returns, the listening socket is closed and the log writer flushed.
        A slot running on the receive thread may call this too; the loop
        then finishes after the slot returns.
        """
        if threading.current_thread() is self._receiver_thread:
            self._running.clear()
            logger.info("Receiver stop requested from the receive thread")
            return

        with self._lock:
            thread = self._receiver_thread
            if thread is None:
                return

            self._running.clear()
            thread.join()

            self._receiver_thread = None
            self._receive_port = None

        logger.info("Receiver thread stopped")

    def send_message(self, target: str, message: Union[str, bytes]) -> int:
        """
        Send one datagram.

        Args:
            target: Destination as ``ip:port`` (``[ip]:port`` for IPv6)
            message: Payload; str is encoded as UTF-8 (surrogateescape),
                bytes are sent as-is

        Returns:
            Number of bytes sent

        Raises:
            InvalidAddressError: If target cannot be parsed
            InvalidMessageError: If a str message holds unencodable surrogates
            DestinationUnreachableError: If the send times out or the
                destination is unreachable
            SendError: For any other socket error
            TypeError: If message is not str or bytes
        """
        try:
            addr = nchat_ip.parse_socket_address(target)
        except nchat_ip.AddressParseError as e:
            raise InvalidAddressError(f"Invalid target address {target!r}: {e}") from e

        if isinstance(message, str):
            # Lone surrogates from a non-UTF-8 terminal go out as the original bytes
            try:
                data = message.encode("utf-8", errors="surrogateescape")
            except UnicodeEncodeError as e:
                raise InvalidMessageError(f"Message cannot be encoded as UTF-8: {e}") from e
        elif isinstance(message, bytes):
            data = message
        else:
            raise TypeError(f"Message must be str or bytes, not {type(message).__name__}")

        try:
            self._send_socket.settimeout(self._send_timeout)
            sent = self._send_socket.sendto(data, addr)
        except socket.timeout as e:
            raise DestinationUnreachableError(
                f"Cannot send to {target}: destination may be unreachable"
            ) from e
        except ConnectionRefusedError as e:
            raise DestinationUnreachableError(f"Cannot send to {target}: {e}") from e
        except OSError as e:
            if e.errno in UNREACHABLE_ERRNOS:
                raise DestinationUnreachableError(f"Cannot send to {target}: {e}") from e
            raise SendError(f"Failed to send to {target}: {e}") from e

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Sent %d bytes to %s", sent, target)
        return sent

    def get_stats(self) -> dict:
        """
        Get the current handler state.

        Returns:
            Dictionary with ports, receiver state and log path
        """
        return {
            'local_send_port': self.local_send_port,
            'receiving': self.is_receiving(),
            'receive_port': self.receive_port,
            'output_file': str(self._output_file)
        }

    def close(self) -> None:
        """Stop the receiver, then release the outbound socket."""
        if self._closed:
            return

        self.stop_receiver()

        try:
            self._send_socket.close()
        except OSError as e:
            logger.debug("Error closing send socket: %s", e)

        self._closed = True
        logger.info("UdpMessageHandler closed")

    # Private methods

    def _receive_loop(self, recv_socket: socket.socket, port: int) -> None:
        """Receive datagrams until the running flag is cleared."""
        try:
            writer = open(self._output_file, "a", encoding="utf-8",
                          buffering=WRITE_BUFFER_SIZE)
        except OSError as e:
            writer = None
            self._report(logging.ERROR, f"Cannot open output file {self._output_file}: {e}")

        self._report(logging.INFO, f"Receiver started, listening on port {port}")

        try:
            while self._running.is_set():
                try:
                    data, source = recv_socket.recvfrom(RECV_BUFFER_SIZE)
                except socket.timeout:
                    continue
                except OSError as e:
                    self._report(logging.WARNING, f"Receive error: {e}")
                    time.sleep(RECV_ERROR_BACKOFF)
                    continue

                entry = LogEntry(datetime.now(), source, data)

                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug("Received %d bytes from %s", len(data), source)

                if writer is not None:
                    try:
                        writer.write(entry.format())
                    except OSError as e:
                        self._report(logging.ERROR, f"File write error: {e}")

                try:
                    self.message_received.emit(entry)
                except Exception as e:
                    logger.error("message_received slot failed: %s", e, exc_info=True)
        finally:
            if writer is not None:
                try:
                    writer.close()
                except OSError as e:
                    self._report(logging.ERROR, f"File flush error: {e}")
            recv_socket.close()

        self._report(logging.INFO, "Receiver stopped")

    def _report(self, level: int, message: str) -> None:
        """Log a status message and deliver it to status_message slots."""
        logger.log(level, message)
        try:
            self.status_message.emit(message)
        except Exception as e:
            logger.error("status_message slot failed: %s", e, exc_info=True)

    @staticmethod
    def _validate_port(port) -> int:
        """
        Validate a port number.

        Args:
            port: Port number (int or decimal str)

        Returns:
            Valid port number

        Raises:
            InvalidPortError: If port is not an integer in 0..65535
        """
        try:
            return nchat_ip.parse_port(port)
        except nchat_ip.AddressParseError as e:
            raise InvalidPortError(str(e)) from e
