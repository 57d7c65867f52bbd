# Copyright [2025] [ecki]
# SPDX-License-Identifier: Apache-2.0

"""
NChat command line

Interactive front end for the UDP handler and the frp tunnel. This is the
only module that writes to the console.
"""

import argparse
import logging
import queue
import sys
from typing import Callable, List, Optional, TextIO

import nchat_frp
import nchat_ip
import nchat_udp_handler

logger = logging.getLogger(__name__)

MASTER_VERSION = "1.0.1"
BUILD_VERSION = "py0"
PROJECT_URL = "https://github.com/duanchang425/YChat"

HELP_TEXT = """
Commands:
  send    - send a message to an address
  start   - start the message receiver
  stop    - stop the message receiver
  status  - show the current state
  version - show the program version
  frp     - frp tunnel management (type 'frp' for details)
  quit    - exit the program
  help    - show this help
Project home: {url}"""

FRP_HELP_TEXT = """
frp tunnel commands:
  frp init     - create the frp manager with default settings
  frp config   - configure the frp server (frp config <server> <port> [token])
  frp start    - start the frp tunnel
  frp stop     - stop the frp tunnel
  frp status   - show the frp state
  frp download - download the frp client

Example:
  frp config frp.example.com 7000 mytoken
  frp start"""


class InputHandler:
    """
    Reads commands and dispatches them to the UDP handler.

    Status reports from the receiver thread are queued and printed before
    the next prompt, so the receiver never writes to the console itself.
    """

    def __init__(
            self,
            handler: nchat_udp_handler.UdpMessageHandler,
            input_func: Optional[Callable[[str], str]] = None,
            out: Optional[TextIO] = None
    ):
        self.handler = handler
        self.frp_manager: Optional[nchat_frp.FrpManager] = None
        self._input = input_func or input
        self._out = out or sys.stdout
        self._status_queue: "queue.Queue[str]" = queue.Queue()

        self.handler.status_message.connect(self._on_status_message)

    def handle_command(self, command: str) -> bool:
        """
        Run one command line.

        Returns:
            True if the program should exit
        """
        parts = command.split()
        cmd = parts[0] if parts else ""
        if cmd:
            logger.debug("Dispatching command %r", cmd)

        if cmd == "send":
            self.handle_send()
        elif cmd == "start":
            self.handle_start()
        elif cmd == "stop":
            self.handle_stop()
        elif cmd == "status":
            self.handle_status()
        elif cmd == "version":
            self.handle_version()
        elif cmd == "frp":
            self.handle_frp(parts[1:])
        elif cmd == "quit":
            self._print("Exiting")
            return True
        elif cmd == "help":
            self.show_help()
        elif cmd:
            self._print(f"Unknown command '{command.strip()}', type 'help' for help")
        return False

    def handle_send(self) -> None:
        target = self.prompt_input("Target address (IP:port, e.g. 127.0.0.1:8080)")
        if target is None:
            return
        message = self.prompt_input("Message")
        if message is None:
            return

        try:
            size = self.handler.send_message(target, message)
        except nchat_udp_handler.UDPHandlerError as e:
            self._print(f"Send failed: {e}")
            return
        self._print(f"Sent {size} bytes to {target}")

    def handle_start(self) -> None:
        if self.handler.is_receiving():
            self._print("Receiver is already running")
            return

        port_text = self.prompt_input("Receive port (e.g. 8080)")
        if port_text is None:
            return

        try:
            port = nchat_ip.parse_port(port_text)
        except nchat_ip.AddressParseError:
            self._print("Invalid port number")
            return

        try:
            self.handler.start_receiver(port)
        except (nchat_udp_handler.UDPHandlerError, OSError) as e:
            self._print(f"Failed to start receiver: {e}")

    def handle_stop(self) -> None:
        if not self.handler.is_receiving():
            self._print("Receiver is not running")
            return
        self.handler.stop_receiver()
        self.drain_status()

    def handle_status(self) -> None:
        stats = self.handler.get_stats()
        self._print("=== NChat status ===")
        self._print(f"Send port: {stats['local_send_port']}")
        self._print(f"Local IPv4: {nchat_ip.get_ipv4_address()}")
        for name, addrs in nchat_ip.get_all_interface_addresses().items():
            if addrs['ipv4']:
                self._print(f"  {name}: {', '.join(addrs['ipv4'])}")
        self._print(f"Receiver: {'running' if stats['receiving'] else 'stopped'}")
        if stats['receive_port'] is not None:
            self._print(f"Receive port: {stats['receive_port']}")
        self._print(f"Messages saved to: {stats['output_file']}")

        self._print("")
        self.handle_frp_status()

    def handle_version(self) -> None:
        self._print(f"NChat version {MASTER_VERSION} {BUILD_VERSION}")

    def handle_frp(self, args: List[str]) -> None:
        if not args:
            self._print(FRP_HELP_TEXT)
            return

        sub = args[0]
        try:
            if sub == "init":
                self._replace_frp_manager(nchat_frp.default_frp_config())
                self._print("frp manager initialized")
            elif sub == "config":
                self._handle_frp_config(args[1:])
            elif sub == "start":
                self._require_frp().start()
                self._print("frp tunnel started")
            elif sub == "stop":
                self._require_frp().stop()
                self._print("frp tunnel stopped")
            elif sub == "status":
                self.handle_frp_status()
            elif sub == "download":
                self._print("Downloading frp client...")
                path = self._require_frp().download_frp_if_needed()
                self._print(f"frp client ready: {path}")
            else:
                self._print(f"Unknown frp command: {sub}")
                self._print(FRP_HELP_TEXT)
        except (nchat_frp.FrpError, OSError) as e:
            self._print(f"frp {sub} failed: {e}")

    def handle_frp_status(self) -> None:
        self._print("=== frp status ===")
        if self.frp_manager is None:
            self._print("frp not initialized")
            return

        status = self.frp_manager.get_status()
        self._print(f"State: {'running' if status.is_running else 'stopped'}")
        self._print(f"Server: {status.config.server_addr}:{status.config.server_port}")
        self._print(f"Local port: {status.config.local_port}")
        self._print(f"Protocol: {status.config.protocol}")
        self._print(f"Proxy name: {status.config.name}")
        if status.config.token:
            self._print(f"Token: {status.config.token}")
        self._print(f"Config file: {status.config_path}")

    def show_help(self) -> None:
        self._print(HELP_TEXT.format(url=PROJECT_URL))

    def prompt_input(self, prompt: str) -> Optional[str]:
        """Prompt for one line; None if input is closed."""
        try:
            return self._input(f"{prompt}: ").strip()
        except EOFError:
            self._print("")
            return None

    def drain_status(self) -> None:
        """Print status reports queued by the receiver thread."""
        while True:
            try:
                message = self._status_queue.get_nowait()
            except queue.Empty:
                return
            self._print(message)

    def run(self) -> None:
        """Read commands until quit or end of input."""
        while True:
            self.drain_status()
            try:
                command = self._input("> ")
            except EOFError:
                break
            if self.handle_command(command):
                break

    def close(self) -> None:
        if self.frp_manager is not None:
            self.frp_manager.close()
        self.handler.status_message.disconnect(self._on_status_message)

    # Private methods

    def _on_status_message(self, message: str) -> None:
        self._status_queue.put(message)

    def _handle_frp_config(self, args: List[str]) -> None:
        if len(args) < 2:
            self._print("Usage: frp config <server> <port> [token]")
            return
        try:
            server_port = nchat_ip.parse_port(args[1])
        except nchat_ip.AddressParseError:
            self._print(f"Invalid port number: {args[1]}")
            return

        config = nchat_frp.FrpConfig(
            server_addr=args[0],
            server_port=server_port,
            token=args[2] if len(args) > 2 else None,
        )
        self._replace_frp_manager(config)
        self._print("frp configuration updated")

    def _replace_frp_manager(self, config: nchat_frp.FrpConfig) -> None:
        """Install a manager for config, bound to the current receive port."""
        if self.handler.receive_port is not None:
            config = config.with_local_port(self.handler.receive_port)
        if self.frp_manager is not None:
            self.frp_manager.stop()
        self.frp_manager = nchat_frp.FrpManager(config)

    def _require_frp(self) -> nchat_frp.FrpManager:
        if self.frp_manager is None:
            raise nchat_frp.FrpError("frp manager not initialized, run 'frp init' or 'frp config' first")
        return self.frp_manager

    def _print(self, text: str) -> None:
        print(text, file=self._out)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="UDP message sender and receiver")
    parser.add_argument("--output-file", default=nchat_udp_handler.DEFAULT_OUTPUT_FILE,
                        help="file received messages are appended to")
    parser.add_argument("--port", type=int, default=None,
                        help="start the receiver on this port right away")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="logging level")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("UDP message sender/receiver")
    print(f"Messages are saved to: {args.output_file}")
    if sys.platform.startswith("win"):
        print("Note: make sure the Windows firewall allows UDP traffic")

    try:
        handler = nchat_udp_handler.UdpMessageHandler(args.output_file)
    except OSError as e:
        print(f"Failed to initialize: {e}", file=sys.stderr)
        return 1

    with handler:
        input_handler = InputHandler(handler)
        try:
            print(f"Send port: {handler.local_send_port}")
            if args.port is not None:
                try:
                    handler.start_receiver(args.port)
                except (nchat_udp_handler.UDPHandlerError, OSError) as e:
                    print(f"Failed to start receiver: {e}", file=sys.stderr)
            input_handler.show_help()
            input_handler.run()
        except KeyboardInterrupt:
            print()
        finally:
            input_handler.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
