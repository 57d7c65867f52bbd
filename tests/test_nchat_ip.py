"""
Tests for nchat_ip address parsing and interface discovery.
"""
import socket
from types import SimpleNamespace
from unittest.mock import patch

import pytest

import nchat_ip
from nchat_ip import AddressParseError


def _addr(family, address):
    return SimpleNamespace(family=family, address=address)


class TestParseSocketAddress:

    @pytest.mark.parametrize("text,expected", [
        ("127.0.0.1:8080", ("127.0.0.1", 8080)),
        ("0.0.0.0:0", ("0.0.0.0", 0)),
        ("192.168.1.20:65535", ("192.168.1.20", 65535)),
        ("  10.0.0.1:53  ", ("10.0.0.1", 53)),
        ("[::1]:9000", ("::1", 9000)),
        ("[2001:db8::1]:443", ("2001:db8::1", 443)),
    ])
    def test_valid(self, text, expected):
        assert nchat_ip.parse_socket_address(text) == expected

    @pytest.mark.parametrize("text", [
        "not-an-address",
        "",
        "127.0.0.1",
        "127.0.0.1:",
        ":8080",
        "127.0.0.1:-1",
        "127.0.0.1:65536",
        "127.0.0.1:80a",
        "256.0.0.1:80",
        "example.com:80",
        "::1:80",
        "[::1]80",
        "[127.0.0.1]:80",
    ])
    def test_invalid(self, text):
        with pytest.raises(AddressParseError):
            nchat_ip.parse_socket_address(text)

    def test_non_string(self):
        with pytest.raises(AddressParseError):
            nchat_ip.parse_socket_address(("127.0.0.1", 80))

    def test_error_is_value_error(self):
        with pytest.raises(ValueError):
            nchat_ip.parse_socket_address("nope")


class TestHelpers:

    def test_parse_port(self):
        assert nchat_ip.parse_port("8080") == 8080
        assert nchat_ip.parse_port(0) == 0
        with pytest.raises(AddressParseError):
            nchat_ip.parse_port("65536")

    def test_format_socket_address(self):
        assert nchat_ip.format_socket_address(("10.1.2.3", 80)) == "10.1.2.3:80"
        assert nchat_ip.format_socket_address(("::1", 80, 0, 0)) == "[::1]:80"

    def test_ip_validation(self):
        assert nchat_ip.is_ipv4_valid("192.168.1.1")
        assert not nchat_ip.is_ipv4_valid("256.1.1.1")
        assert not nchat_ip.is_ipv4_valid(None)
        assert nchat_ip.is_ipv6_valid("2001:db8::1")
        assert not nchat_ip.is_ipv6_valid("invalid")


class TestInterfaces:

    def test_primary_ipv4_skips_loopback_and_link_local(self):
        addrs = {
            "lo": [_addr(socket.AF_INET, "127.0.0.1")],
            "eth0": [_addr(socket.AF_INET, "169.254.3.4")],
            "eth1": [_addr(socket.AF_INET6, "fe80::1"), _addr(socket.AF_INET, "192.168.5.7")],
        }
        stats = {name: SimpleNamespace(isup=True) for name in addrs}

        with patch("nchat_ip.psutil.net_if_addrs", return_value=addrs), \
                patch("nchat_ip.psutil.net_if_stats", return_value=stats):
            assert nchat_ip.get_ipv4_address() == "192.168.5.7"

    def test_primary_ipv4_skips_down_interfaces(self):
        addrs = {"eth0": [_addr(socket.AF_INET, "10.0.0.5")]}
        stats = {"eth0": SimpleNamespace(isup=False)}

        with patch("nchat_ip.psutil.net_if_addrs", return_value=addrs), \
                patch("nchat_ip.psutil.net_if_stats", return_value=stats):
            assert nchat_ip.get_ipv4_address() == nchat_ip.FALLBACK_IPV4

    def test_primary_ipv4_fallback_on_error(self):
        with patch("nchat_ip.psutil.net_if_addrs", side_effect=RuntimeError("boom")):
            assert nchat_ip.get_ipv4_address() == nchat_ip.FALLBACK_IPV4

    def test_all_interface_addresses(self):
        addrs = {
            "eth0": [_addr(socket.AF_INET, "10.0.0.5"), _addr(socket.AF_INET6, "fe80::5")],
            "dummy": [_addr(-1, "00:11:22:33:44:55")],
        }
        with patch("nchat_ip.psutil.net_if_addrs", return_value=addrs):
            result = nchat_ip.get_all_interface_addresses()

        assert result == {"eth0": {"ipv4": ["10.0.0.5"], "ipv6": ["fe80::5"]}}

    def test_all_interface_addresses_error(self):
        with patch("nchat_ip.psutil.net_if_addrs", side_effect=RuntimeError("boom")):
            assert nchat_ip.get_all_interface_addresses() == {}
