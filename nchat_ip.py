# Copyright [2025] [ecki]
# SPDX-License-Identifier: Apache-2.0

"""
NChat IP Module

Socket address parsing and local interface discovery for the UDP handler
and the command line.
"""

import logging
import socket
from typing import Dict, List, Tuple

import psutil

logger = logging.getLogger(__name__)

# Constants
FALLBACK_IPV4 = '127.0.0.1'
MIN_PORT = 0
MAX_PORT = 65535


class NetworkError(Exception):
    """Base exception for network helpers."""
    pass


class AddressParseError(NetworkError, ValueError):
    """Raised when a socket address string cannot be parsed."""
    pass


def is_ipv4_valid(ip: str) -> bool:
    """
    Check if a string is a valid IPv4 address.

    Args:
        ip: IP address string to validate

    Returns:
        True if valid IPv4, False otherwise
    """
    try:
        socket.inet_pton(socket.AF_INET, ip)
        return True
    except (OSError, ValueError, TypeError):
        return False


def is_ipv6_valid(ip: str) -> bool:
    """
    Check if a string is a valid IPv6 address.

    Args:
        ip: IP address string to validate

    Returns:
        True if valid IPv6, False otherwise
    """
    try:
        socket.inet_pton(socket.AF_INET6, ip)
        return True
    except (OSError, ValueError, TypeError):
        return False


def parse_port(value) -> int:
    """Parse a decimal port number in the range 0..65535."""
    text = str(value).strip()
    if not (text.isascii() and text.isdigit()):
        raise AddressParseError(f"Invalid port: {value!r}")
    port = int(text)
    if not MIN_PORT <= port <= MAX_PORT:
        raise AddressParseError(f"Port out of range: {port}")
    return port


def parse_socket_address(text: str) -> Tuple[str, int]:
    """
    Parse an ``ip:port`` string.

    IPv4 addresses are written ``a.b.c.d:port``, IPv6 addresses
    ``[addr]:port``. Only IP literals are accepted; host names are not
    resolved.

    Args:
        text: Address string

    Returns:
        Tuple of (ip, port)

    Raises:
        AddressParseError: If the string is not a socket address
    """
    if not isinstance(text, str):
        raise AddressParseError(f"Address must be str, not {type(text).__name__}")

    text = text.strip()

    if text.startswith('['):
        host, sep, port_text = text[1:].partition(']:')
        if not sep or not is_ipv6_valid(host):
            raise AddressParseError(f"Invalid IPv6 socket address: {text!r}")
    else:
        host, sep, port_text = text.rpartition(':')
        if not sep or not is_ipv4_valid(host):
            raise AddressParseError(f"Invalid socket address: {text!r}")

    return host, parse_port(port_text)


def format_socket_address(addr: Tuple) -> str:
    """Render an address tuple as ``ip:port`` (``[ip]:port`` for IPv6)."""
    host, port = addr[0], addr[1]
    if ':' in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def get_ipv4_address() -> str:
    """
    Get the primary IPv4 address of this machine.

    Returns:
        IPv4 address as string

    Note:
        Prefers non-loopback, non-link-local addresses on interfaces that
        are up. Falls back to 127.0.0.1 if no other address is found.
    """
    try:
        if_addrs = psutil.net_if_addrs()
        if_stats = psutil.net_if_stats()
    except Exception as e:
        logger.error("Failed to get network interfaces: %s", e)
        logger.warning("Using fallback IPv4: %s", FALLBACK_IPV4)
        return FALLBACK_IPV4

    for interface_name, addr_list in if_addrs.items():
        if interface_name.lower().startswith('lo'):
            continue

        if interface_name in if_stats and not if_stats[interface_name].isup:
            continue

        for addr in addr_list:
            if addr.family != socket.AF_INET:
                continue
            if addr.address.startswith('127.') or addr.address.startswith('169.254.'):
                continue
            logger.debug("Selected primary IPv4 address %s on %s", addr.address, interface_name)
            return addr.address

    logger.warning("No active IPv4 address found, using fallback: %s", FALLBACK_IPV4)
    return FALLBACK_IPV4


def get_all_interface_addresses() -> Dict[str, Dict[str, List[str]]]:
    """
    Get all IP addresses for all network interfaces.

    Returns:
        Dictionary mapping interface names to address lists
        Format: {'eth0': {'ipv4': [...], 'ipv6': [...]}}
    """
    interfaces = {}

    try:
        if_addrs = psutil.net_if_addrs()
    except Exception as e:
        logger.error("Failed to get interface addresses: %s", e)
        return interfaces

    for interface_name, addr_list in if_addrs.items():
        ipv4_addrs = [a.address for a in addr_list if a.family == socket.AF_INET]
        ipv6_addrs = [a.address for a in addr_list if a.family == socket.AF_INET6]

        if ipv4_addrs or ipv6_addrs:
            interfaces[interface_name] = {
                'ipv4': ipv4_addrs,
                'ipv6': ipv6_addrs
            }

    logger.debug("Found addresses for %d interfaces", len(interfaces))
    return interfaces
