"""Convert raw ``MarketDeal`` JSON values into typed deal rows.

Expected shape of one entry (Lotus ``StateMarketDeals``)::

    "1234": {
        "Proposal": {
            "PieceCID": {"/": "baga6ea4sea..."},
            "PieceSize": 34359738368,
            "VerifiedDeal": true,
            "Client": "f01234",
            "Provider": "f05678",
            "Label": "...",
            "StartEpoch": 1000,
            "EndEpoch": 2000,
            "StoragePricePerEpoch": "0",
            "ProviderCollateral": "123456789",
            "ClientCollateral": "0"
        },
        "State": {
            "SectorStartEpoch": 1100,
            "LastUpdatedEpoch": -1,
            "SlashEpoch": -1
        }
    }
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Any

from .models import DealRow, RawDealEntry

_DEAL_ID_RE = re.compile(r"[0-9]+")
_BIG_INT_RE = re.compile(r"-?[0-9]+")


class TranscodeError(Exception):
    """Raised when a deal entry is missing a field or has the wrong shape."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"deal {key!r}: {reason}")
        self.key = key
        self.reason = reason


def _section(entry: RawDealEntry, name: str) -> Mapping[str, Any]:
    if not isinstance(entry.value, Mapping):
        raise TranscodeError(entry.key, f"deal is {type(entry.value).__name__}, expected an object")
    section = entry.value.get(name)
    if not isinstance(section, Mapping):
        raise TranscodeError(entry.key, f"{name} is missing or not an object")
    return section


def _field(key: str, section: Mapping[str, Any], section_name: str, name: str) -> Any:
    if name not in section:
        raise TranscodeError(key, f"{section_name}.{name} is missing")
    return section[name]


def _as_str(key: str, path: str, value: Any) -> str:
    if not isinstance(value, str):
        raise TranscodeError(key, f"{path} must be a string, got {type(value).__name__}")
    return value


def _as_bool(key: str, path: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise TranscodeError(key, f"{path} must be a boolean, got {type(value).__name__}")
    return value


def _as_epoch(key: str, path: str, value: Any) -> int:
    # bool is an int subclass; true is not an epoch.
    if isinstance(value, bool) or not isinstance(value, int):
        raise TranscodeError(key, f"{path} must be an integer, got {value!r}")
    return value


def _as_big_int(key: str, path: str, value: Any) -> int:
    """Exact integer from a JSON number or a decimal string."""
    if isinstance(value, bool):
        raise TranscodeError(key, f"{path} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _BIG_INT_RE.fullmatch(value):
        return int(value)
    if isinstance(value, Decimal) and value == value.to_integral_value() and "." not in str(value):
        return int(value)
    raise TranscodeError(key, f"{path} must be an integer or decimal string, got {value!r}")


def parse_deal_id(key: str) -> int:
    if not isinstance(key, str) or not _DEAL_ID_RE.fullmatch(key):
        raise TranscodeError(str(key), "deal id must be a non-negative decimal string")
    return int(key)


def transcode_entry(entry: RawDealEntry) -> DealRow:
    """Validate one raw entry and convert it to a ``DealRow``.

    Raises:
        TranscodeError: If any field is missing or has the wrong type.
    """
    key = entry.key
    deal_id = parse_deal_id(key)
    proposal = _section(entry, "Proposal")
    state = _section(entry, "State")

    def p(name: str) -> Any:
        return _field(key, proposal, "Proposal", name)

    def s(name: str) -> Any:
        return _field(key, state, "State", name)

    piece_cid = p("PieceCID")
    if not isinstance(piece_cid, Mapping):
        raise TranscodeError(key, "Proposal.PieceCID must be an object")

    return DealRow(
        deal_id=deal_id,
        piece_cid=_as_str(key, "Proposal.PieceCID./", _field(key, piece_cid, "Proposal.PieceCID", "/")),
        piece_size=_as_big_int(key, "Proposal.PieceSize", p("PieceSize")),
        verified_deal=_as_bool(key, "Proposal.VerifiedDeal", p("VerifiedDeal")),
        client=_as_str(key, "Proposal.Client", p("Client")),
        provider=_as_str(key, "Proposal.Provider", p("Provider")),
        label=_as_str(key, "Proposal.Label", p("Label")),
        start_epoch=_as_epoch(key, "Proposal.StartEpoch", p("StartEpoch")),
        end_epoch=_as_epoch(key, "Proposal.EndEpoch", p("EndEpoch")),
        storage_price_per_epoch=_as_big_int(
            key, "Proposal.StoragePricePerEpoch", p("StoragePricePerEpoch")
        ),
        provider_collateral=_as_big_int(key, "Proposal.ProviderCollateral", p("ProviderCollateral")),
        client_collateral=_as_big_int(key, "Proposal.ClientCollateral", p("ClientCollateral")),
        sector_start_epoch=_as_epoch(key, "State.SectorStartEpoch", s("SectorStartEpoch")),
        last_updated_epoch=_as_epoch(key, "State.LastUpdatedEpoch", s("LastUpdatedEpoch")),
        slash_epoch=_as_epoch(key, "State.SlashEpoch", s("SlashEpoch")),
    )


def transcode_batch(entries: Sequence[RawDealEntry]) -> list[DealRow]:
    """Transcode a batch; the first bad entry fails the whole batch."""
    return [transcode_entry(entry) for entry in entries]


def client_of(entry: RawDealEntry) -> str | None:
    """Best-effort client identifier of a raw entry, without full validation."""
    if not isinstance(entry.value, Mapping):
        return None
    proposal = entry.value.get("Proposal")
    if not isinstance(proposal, Mapping):
        return None
    client = proposal.get("Client")
    return client if isinstance(client, str) and client else None
