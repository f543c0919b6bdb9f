import ipaddress
import json

import pytest

import config_store
from config_store import State, apply_endpoint, parse_endpoint, split_bind
from errors import InvalidEndpointError


@pytest.mark.parametrize("ep,ip,port", [
    ("162.159.198.1", "162.159.198.1", ""),
    ("162.159.198.1:443", "162.159.198.1", "443"),
    ("2606:4700:103::1", "2606:4700:103::1", ""),
    ("[2606:4700:103::1]:8443", "2606:4700:103::1", "8443"),
])
def test_parse_endpoint(ep, ip, port):
    got_ip, got_port = parse_endpoint(ep)
    assert got_ip == ipaddress.ip_address(ip)
    assert got_port == port


@pytest.mark.parametrize("ep", [
    "engage.cloudflareclient.com:2408",
    "162.159.198.1:0",
    "162.159.198.1:70000",
    "[2606:4700:103::1]",
    "not-an-ip",
    "2606:4700:103::zz:443",
])
def test_parse_endpoint_rejects(ep):
    with pytest.raises(InvalidEndpointError):
        parse_endpoint(ep)


def test_unbracketed_ipv6_with_port_is_read_as_address():
    # Parses as a bare IPv6 address, so no port is taken from it
    ip, port = parse_endpoint("2606:4700:103::1:443")
    assert port == ""
    assert ip.version == 6


def test_split_bind():
    assert split_bind("127.0.0.1:1080") == ("127.0.0.1", "1080")
    with pytest.raises(InvalidEndpointError):
        split_bind("127.0.0.1")
    with pytest.raises(InvalidEndpointError):
        split_bind("127.0.0.1:abc")


def test_apply_endpoint_sets_family_keys():
    cfg = {"private_key": "abc", "endpoint_v6": "2606:4700:103::2"}
    assert apply_endpoint(cfg, "162.159.198.2:443") == "IPv4"
    assert cfg == {
        "private_key": "abc",
        "endpoint_v6": "2606:4700:103::2",
        "endpoint_v4": "162.159.198.2",
        "endpoint_v4_port": "443",
    }


def test_apply_endpoint_without_port_keeps_existing_port():
    cfg = {"endpoint_v6_port": "443"}
    assert apply_endpoint(cfg, "2606:4700:103::1") == "IPv6"
    assert cfg == {"endpoint_v6": "2606:4700:103::1", "endpoint_v6_port": "443"}


def test_set_endpoint_preserves_other_keys(tmp_path):
    path = tmp_path / "config.json"
    original = {
        "private_key": "k",
        "endpoint_v4": "162.159.198.1",
        "endpoint_v4_port": "443",
        "license": "xyz",
        "nested": {"a": [1, 2]},
    }
    path.write_text(json.dumps(original))

    config_store.set_endpoint(str(path), "[2606:4700:103::5]:500")

    cfg = json.loads(path.read_text())
    assert cfg == {
        **original,
        "endpoint_v6": "2606:4700:103::5",
        "endpoint_v6_port": "500",
    }


def test_load_config_missing_file(tmp_path):
    assert config_store.load_config(str(tmp_path / "absent.json")) == {}


@pytest.mark.parametrize("text", ["[1, 2]", "{not json", ""])
def test_unreadable_config_starts_empty(tmp_path, capsys, text):
    path = tmp_path / "config.json"
    path.write_text(text)
    assert config_store.load_config(str(path)) == {}
    assert "level=WARN" in capsys.readouterr().out


def test_set_endpoint_replaces_unreadable_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    assert config_store.set_endpoint(str(path), "162.159.198.1:443") == "IPv4"
    assert json.loads(path.read_text()) == {
        "endpoint_v4": "162.159.198.1",
        "endpoint_v4_port": "443",
    }


def test_state_roundtrip(tmp_path):
    path = str(tmp_path / "state.json")
    config_store.save_state(State(endpoint="162.159.198.1:443", socks="127.0.0.1:1080"), path)
    assert config_store.load_state(path) == State("162.159.198.1:443", "127.0.0.1:1080")
    assert json.loads(open(path).read()) == {
        "endpoint": "162.159.198.1:443",
        "socks": "127.0.0.1:1080",
    }
