"""
Configuration Loader (``escrow_config.loader``).

Responsibility
--------------
Loads a YAML configuration set and parses it into the typed
``escrow_config.schema`` dataclasses.  The single public entry point for
runtime config is ``escrow_config.get_active_config()``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Numbers are converted to ``Decimal`` through their string form, never
  through binary float arithmetic.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the raw
  YAML content for configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Wrong value types  -> ``ConfigurationError`` naming the section.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from escrow_config.schema import (
    CertificateSection,
    EscrowEngineConfig,
    EscrowSection,
    FeeScheduleDef,
    FeesSection,
    JurisdictionDef,
    JurisdictionPairDef,
    LeverageSection,
    QuickPaySection,
    RiskSection,
    TaxSection,
    TierTableDef,
)
from escrow_kernel.exceptions import ConfigurationError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _dec(value: Any, section: str, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be numeric, got {value!r}", section=section)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ConfigurationError(
            f"{name} must be numeric, got {value!r}", section=section,
        ) from exc


def _opt_dec(value: Any, section: str, name: str) -> Decimal | None:
    return None if value is None else _dec(value, section, name)


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"section must be a mapping, got {type(raw).__name__}", section=name)
    return raw


def _decimal_fields(raw: dict[str, Any], defaults: Any, section: str) -> dict[str, Any]:
    """Convert the keys of ``raw`` whose defaults are Decimal."""
    out: dict[str, Any] = {}
    for key, value in raw.items():
        if not hasattr(defaults, key):
            raise ConfigurationError(f"unknown key {key!r}", section=section)
        if isinstance(getattr(defaults, key), Decimal):
            out[key] = _dec(value, section, key)
        else:
            out[key] = value
    return out


def parse_escrow(raw: dict[str, Any]) -> EscrowSection:
    return EscrowSection(**_decimal_fields(raw, EscrowSection(), "escrow"))


def parse_fees(raw: dict[str, Any]) -> FeesSection:
    schedules = tuple(
        FeeScheduleDef(
            name=item["name"],
            transaction_rate=_dec(item.get("transaction_rate", 0), "fees", "transaction_rate"),
            quick_pay_premium=_dec(item.get("quick_pay_premium", 0), "fees", "quick_pay_premium"),
            volume_discount_threshold=_opt_dec(
                item.get("volume_discount_threshold"), "fees", "volume_discount_threshold",
            ),
            volume_discount_rate=_dec(
                item.get("volume_discount_rate", 0), "fees", "volume_discount_rate",
            ),
        )
        for item in raw.get("schedules", ())
    )
    return FeesSection(
        default_schedule=raw.get("default_schedule", "zero"),
        schedules=schedules or FeesSection().schedules,
    )


def parse_quickpay(raw: dict[str, Any]) -> QuickPaySection:
    return QuickPaySection(**_decimal_fields(raw, QuickPaySection(), "quickpay"))


def parse_tier_table(raw: dict[str, Any], name: str) -> TierTableDef:
    tiers = tuple(
        (_dec(limit, "risk", f"{name}.limit"), _dec(score, "risk", f"{name}.score"))
        for limit, score in raw.get("tiers", ())
    )
    return TierTableDef(
        direction=raw.get("direction", "below"),
        tiers=tiers,
        fallback=_dec(raw["fallback"], "risk", f"{name}.fallback"),
    )


def parse_risk(raw: dict[str, Any]) -> RiskSection:
    raw = dict(raw)
    weights = {
        k: _dec(v, "risk", f"weights.{k}")
        for k, v in (raw.pop("weights", None) or {}).items()
    }
    tables = {
        name: parse_tier_table(table, name)
        for name, table in (raw.pop("tables", None) or {}).items()
    }
    pairs = tuple(
        JurisdictionPairDef(
            first=str(item["first"]).upper(),
            second=str(item["second"]).upper(),
            score=_dec(item["score"], "risk", "jurisdiction_pairs.score"),
        )
        for item in (raw.pop("jurisdiction_pairs", None) or ())
    )
    kwargs = _decimal_fields(raw, RiskSection(), "risk")
    if weights:
        kwargs["weights"] = weights
    return RiskSection(tables=tables, jurisdiction_pairs=pairs, **kwargs)


def parse_tax(raw: dict[str, Any]) -> TaxSection:
    jurisdictions = tuple(
        JurisdictionDef(
            code=str(item["code"]).upper(),
            regime=item["regime"],
            hst_rate=_dec(item.get("hst_rate", 0), "tax", "hst_rate"),
            gst_rate=_dec(item.get("gst_rate", 0), "tax", "gst_rate"),
            pst_rate=_dec(item.get("pst_rate", 0), "tax", "pst_rate"),
            pst_on_gst=bool(item.get("pst_on_gst", False)),
            pos_exemption=bool(item.get("pos_exemption", True)),
        )
        for item in raw.get("jurisdictions", ())
    )
    return TaxSection(jurisdictions=jurisdictions)


def parse_certificate(raw: dict[str, Any]) -> CertificateSection:
    raw = dict(raw)
    conditions = tuple(raw.pop("conditions", None) or ())
    return CertificateSection(
        conditions=conditions,
        **_decimal_fields(raw, CertificateSection(), "certificate"),
    )


def parse_leverage(raw: dict[str, Any]) -> LeverageSection:
    return LeverageSection(**_decimal_fields(raw, LeverageSection(), "leverage"))


def parse_config(data: dict[str, Any]) -> EscrowEngineConfig:
    """
    Parse a raw YAML mapping into an ``EscrowEngineConfig``.

    Raises:
        ConfigurationError: on unknown keys or non-numeric values.
        KeyError: if a required key inside a list entry is missing.
    """
    return EscrowEngineConfig(
        config_id=str(data.get("config_id", "escrow-default")),
        version=int(data.get("version", 1)),
        checksum=compute_checksum(data),
        escrow=parse_escrow(_section(data, "escrow")),
        fees=parse_fees(_section(data, "fees")),
        quickpay=parse_quickpay(_section(data, "quickpay")),
        risk=parse_risk(_section(data, "risk")),
        tax=parse_tax(_section(data, "tax")),
        certificate=parse_certificate(_section(data, "certificate")),
        leverage=parse_leverage(_section(data, "leverage")),
    )


def load_config(path: Path) -> EscrowEngineConfig:
    """Load and parse one YAML configuration set."""
    return parse_config(load_yaml_file(path))
