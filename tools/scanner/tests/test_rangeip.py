import ipaddress
import random

import pytest

import rangeip
from rangeip import IPVersion, build_candidates


def test_v4_excludes_network_and_broadcast():
    out = build_candidates(IPVersion.V4, ["192.0.2.0/30"], [], ["443"])
    assert out == ["192.0.2.1:443", "192.0.2.2:443"]


def test_v4_full_range_between_bounds():
    out = build_candidates(IPVersion.V4, ["10.1.0.0/24"], [], ["443"])
    hosts = [ipaddress.ip_address(ep.rsplit(":", 1)[0]) for ep in out]
    assert len(hosts) == 254
    assert hosts[0] == ipaddress.ip_address("10.1.0.1")
    assert hosts[-1] == ipaddress.ip_address("10.1.0.254")


def test_v4_host_bits_set_in_cidr_are_normalised():
    out = build_candidates(IPVersion.V4, ["192.0.2.3/30"], [], ["443"])
    assert out == ["192.0.2.1:443", "192.0.2.2:443"]


@pytest.mark.parametrize("cidr", ["198.51.100.7/32", "198.51.100.6/31"])
def test_v4_tiny_networks_yield_nothing(cidr):
    assert build_candidates(IPVersion.V4, [cidr], [], ["443"]) == []


def test_v6_is_capped_and_sequential():
    out = build_candidates(IPVersion.V6, [], ["2001:db8::/64"], ["443"])
    assert len(out) == rangeip.V6_SAMPLE_CAP
    assert out[0] == "[2001:db8::]:443"
    assert out[1] == "[2001:db8::1]:443"


def test_v6_small_network_not_padded():
    out = build_candidates(IPVersion.V6, [], ["2001:db8::/126"], ["8443"])
    assert out == [
        "[2001:db8::]:8443",
        "[2001:db8::1]:8443",
        "[2001:db8::2]:8443",
        "[2001:db8::3]:8443",
    ]


def test_bad_cidr_is_skipped_with_warning(capsys):
    out = build_candidates(
        IPVersion.V4, ["not-a-cidr", "192.0.2.0/30", "2001:db8::/64"], [], ["443"],
    )
    assert out == ["192.0.2.1:443", "192.0.2.2:443"]
    logged = capsys.readouterr().out
    assert logged.count('msg="bad cidr"') == 2
    assert "cidr=not-a-cidr" in logged


def test_version_filter():
    v4 = ["192.0.2.0/30"]
    v6 = ["2001:db8::/127"]
    assert all("[" not in ep for ep in build_candidates(IPVersion.V4, v4, v6, ["443"]))
    assert all("[" in ep for ep in build_candidates(IPVersion.V6, v4, v6, ["443"]))
    assert len(build_candidates(IPVersion.ANY, v4, v6, ["443"])) == 4


def test_input_order_preserved():
    out = build_candidates(
        IPVersion.V4, ["192.0.2.8/30", "192.0.2.0/30"], [], ["443"],
    )
    assert out == ["192.0.2.9:443", "192.0.2.10:443", "192.0.2.1:443", "192.0.2.2:443"]


def test_port_picked_from_list_with_injected_rng():
    ports = ["443", "500", "1701"]
    a = build_candidates(IPVersion.V4, ["192.0.2.0/28"], [], ports, random.Random(7))
    b = build_candidates(IPVersion.V4, ["192.0.2.0/28"], [], ports, random.Random(7))
    assert a == b
    assert {ep.rsplit(":", 1)[1] for ep in a} <= set(ports)


def test_empty_port_list_defaults_to_443():
    out = build_candidates(IPVersion.V4, ["192.0.2.0/30"], [], [])
    assert out == ["192.0.2.1:443", "192.0.2.2:443"]


def test_shuffle_returns_copy():
    items = [f"192.0.2.{i}:443" for i in range(1, 20)]
    shuffled = rangeip.shuffle_candidates(items, random.Random(1))
    assert sorted(shuffled) == sorted(items)
    assert items == [f"192.0.2.{i}:443" for i in range(1, 20)]
    assert shuffled == rangeip.shuffle_candidates(items, random.Random(1))


def test_sample_cidr_stays_inside_hosts():
    net = ipaddress.ip_network("192.0.2.0/29")
    picks = rangeip.sample_cidr("192.0.2.0/29", 200, random.Random(3))
    assert len(picks) == 200
    for ip in picks:
        assert ip in net
        assert ip not in (net.network_address, net.broadcast_address)


def test_sample_cidr_v6():
    net = ipaddress.ip_network("2001:db8::/64")
    picks = rangeip.sample_cidr("2001:db8::/64", 10, random.Random(3))
    assert all(ip in net for ip in picks)


def test_split_host_port():
    assert rangeip.split_host_port("192.0.2.1:443") == ("192.0.2.1", 443)
    assert rangeip.split_host_port("[2001:db8::1]:8443") == ("2001:db8::1", 8443)
    assert rangeip.split_host_port("example.com:443") == ("example.com", 443)
    with pytest.raises(ValueError):
        rangeip.split_host_port("2001:db8::1:443")
    with pytest.raises(ValueError):
        rangeip.split_host_port("192.0.2.1")


def test_load_ranges(tmp_path):
    path = tmp_path / "ranges.txt"
    path.write_text("# warp\n162.159.198.0/24\n\n2606:4700:103::/64  # v6\n")
    assert rangeip.load_ranges(str(path)) == ["162.159.198.0/24", "2606:4700:103::/64"]
