from __future__ import annotations

import pytest

from mintkit.errors import InvalidIdentifierFormat
from mintkit.storage.gateways import ipfs_to_https
from mintkit.storage.synthetic import synthetic_cid
from mintkit.testing.fakes import CID_V0, CID_V1
from mintkit.util.cid import cid_from_uri, is_valid_cid, protocol_uri, require_cid, validate_cid


def test_accepts_legacy_and_modern_shapes() -> None:
    v0 = validate_cid(CID_V0)
    assert v0.ok and v0.version == 0

    v1 = validate_cid(CID_V1)
    assert v1.ok and v1.version == 1


@pytest.mark.parametrize(
    "bad",
    [
        "",
        "Qm",
        CID_V0[:-1],  # 45 chars
        CID_V0 + "a",  # 47 chars
        "Qm" + "0" * 44,  # 0 is not base58
        "Qm" + "O" * 44,
        "Qm" + "I" * 44,
        "Qm" + "l" * 44,
        "qm" + CID_V0[2:],
        "ba" + "a" * 55,  # one short
        "BA" + "a" * 56,
        "ba" + "A" * 56,  # upper case not allowed
        "zb2rhe5P4gXftAwvA4eXQ5HJwsER2owDyS9sKaQRRVQPn93bA",
        " " + CID_V0,
    ],
)
def test_rejects_everything_else(bad: str) -> None:
    assert not is_valid_cid(bad)
    with pytest.raises(InvalidIdentifierFormat):
        require_cid(bad)


def test_rejects_non_strings() -> None:
    assert validate_cid(None).reason == "not_a_string"
    assert validate_cid(123).reason == "not_a_string"
    with pytest.raises(InvalidIdentifierFormat) as ei:
        require_cid(b"Qm")
    assert ei.value.reason == "not_a_string"


def test_modern_identifier_has_no_upper_length_bound() -> None:
    assert is_valid_cid("ba" + "a" * 200)


def test_protocol_uri_and_extraction() -> None:
    assert protocol_uri(CID_V0) == f"ipfs://{CID_V0}"
    assert cid_from_uri(f"ipfs://{CID_V0}") == CID_V0
    assert cid_from_uri(f"ipfs://{CID_V1}/image.png") == CID_V1
    assert cid_from_uri(f"https://ipfs.io/ipfs/{CID_V0}?filename=a.png") == CID_V0
    with pytest.raises(InvalidIdentifierFormat):
        cid_from_uri("https://example.com/not-a-cid.png")


def test_ipfs_to_https_rewrites_only_ipfs_scheme() -> None:
    assert ipfs_to_https(f"ipfs://{CID_V0}", "https://w3s.link/ipfs") == f"https://w3s.link/ipfs/{CID_V0}"
    assert ipfs_to_https(f"ipfs://{CID_V0}/meta.json", "https://w3s.link/ipfs/") == f"https://w3s.link/ipfs/{CID_V0}/meta.json"
    assert ipfs_to_https("https://example.com/a.png") == "https://example.com/a.png"
    with pytest.raises(InvalidIdentifierFormat):
        ipfs_to_https("ipfs://nope")


def test_synthetic_identifier_is_deterministic_and_legacy_shaped() -> None:
    a = synthetic_cid("cat.png", 1_700_000_000_000)
    b = synthetic_cid("cat.png", 1_700_000_000_000)
    c = synthetic_cid("cat.png", 1_700_000_000_001)
    d = synthetic_cid("dog.png", 1_700_000_000_000)

    assert a == b
    assert len({a, c, d}) == 3
    for cid in (a, c, d):
        assert len(cid) == 46
        assert cid.startswith("Qm")
        assert validate_cid(cid).version == 0
