"""
Tests for YAML configuration loading.

Covers:
- The packaged default set parses to the production values
- Bridges turn the default set into engines that match the built-in
  defaults
- Checksum identity, path resolution and load failures
"""

from decimal import Decimal

import pytest

from escrow_config import CONFIG_PATH_ENV, get_active_config
from escrow_config.bridges import (
    build_certificate_params,
    build_fee_schedule,
    build_risk_model,
    build_tax_engine,
)
from escrow_config.loader import load_config
from escrow_engines.leverage import CertificateTermsParams
from escrow_engines.risk import PaymentHistory, RiskInputs, WeightedRiskModel
from escrow_kernel.exceptions import ConfigurationError

MINIMAL = "config_id: test-set\nversion: 3\n"


@pytest.fixture
def write_config(tmp_path):
    def _write(text: str, name: str = "escrow.yaml"):
        path = tmp_path / name
        path.write_text(text)
        return path

    return _write


class TestDefaultSet:

    def test_identity(self, escrow_config):
        assert escrow_config.config_id == "escrow-default"
        assert escrow_config.version == 1
        assert len(escrow_config.checksum) == 64

    def test_sections_parse_to_decimals(self, escrow_config):
        assert escrow_config.escrow.min_total == Decimal("1000.0")
        assert escrow_config.quickpay.fee_rate == Decimal("0.025")
        assert escrow_config.fees.schedule("standard").volume_discount_rate == Decimal("0.25")
        assert escrow_config.risk.tables["amount"].tiers[0] == (Decimal("10000"), Decimal("10"))
        assert escrow_config.risk.weights["network"] == Decimal("0.15")
        assert len(escrow_config.tax.jurisdictions) == 13
        assert len(escrow_config.certificate.conditions) == 3

    def test_default_fee_schedule_is_zero(self, escrow_config):
        assert build_fee_schedule(escrow_config).is_zero
        assert build_fee_schedule(escrow_config, "standard").transaction_rate == Decimal("0.01")

    def test_unknown_fee_schedule(self, escrow_config):
        with pytest.raises(ConfigurationError):
            build_fee_schedule(escrow_config, "platinum")

    def test_tax_engine_matches_builtin_table(self, escrow_config):
        result = build_tax_engine(escrow_config).compute(Decimal("1000.00"), "QC")

        assert result.total == Decimal("1154.74")

    def test_risk_model_matches_builtin_defaults(self, escrow_config):
        inputs = RiskInputs(
            history=PaymentHistory(total=0, failed=0),
            business_age_days=1095,
            amount=Decimal("150000"),
            recent_request_count=4,
            trusted_connections=3,
            business_jurisdiction="QC",
            contract_jurisdiction="AB",
        )

        configured = build_risk_model(escrow_config).assess(inputs)

        assert configured == WeightedRiskModel().assess(inputs)

    def test_certificate_params_match_defaults(self, escrow_config):
        assert build_certificate_params(escrow_config) == CertificateTermsParams()


class TestLoading:

    def test_empty_sections_use_defaults(self, write_config):
        config = get_active_config(write_config(MINIMAL))

        assert config.config_id == "test-set"
        assert config.version == 3
        assert config.fees.default_schedule == "zero"
        assert config.tax.jurisdictions == ()

    def test_checksum_tracks_content(self, write_config):
        first = load_config(write_config(MINIMAL, "a.yaml"))
        same = load_config(write_config(MINIMAL, "b.yaml"))
        changed = load_config(write_config(MINIMAL + "escrow:\n  funding_window_days: 45\n", "c.yaml"))

        assert first.checksum == same.checksum
        assert first.checksum != changed.checksum
        assert changed.escrow.funding_window_days == 45

    def test_path_from_environment(self, write_config, monkeypatch):
        monkeypatch.setenv(CONFIG_PATH_ENV, str(write_config(MINIMAL)))

        assert get_active_config().config_id == "test-set"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")

    def test_malformed_yaml(self, write_config):
        with pytest.raises(ConfigurationError, match="invalid YAML"):
            get_active_config(write_config("escrow: [unclosed\n"))

    def test_unknown_key(self, write_config):
        with pytest.raises(ConfigurationError, match="unknown key"):
            get_active_config(write_config("quickpay:\n  fee_percent: 2.5\n"))

    def test_non_numeric_value(self, write_config):
        with pytest.raises(ConfigurationError, match="numeric"):
            get_active_config(write_config("quickpay:\n  fee_rate: cheap\n"))

    def test_section_must_be_mapping(self, write_config):
        with pytest.raises(ConfigurationError):
            get_active_config(write_config("escrow: 5\n"))

    def test_list_entry_missing_key(self, write_config):
        with pytest.raises(ConfigurationError, match="missing required key"):
            get_active_config(write_config("tax:\n  jurisdictions:\n    - {code: \"ON\"}\n"))

    def test_invalid_set_rejected(self, write_config):
        with pytest.raises(ConfigurationError, match="validation failed"):
            get_active_config(write_config("risk:\n  auto_approve_below: 90\n"))
