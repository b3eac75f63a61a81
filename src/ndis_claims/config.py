"""
Configuration management.

This module defines ALL configuration for the claims pipeline.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Banking originator fields end up verbatim in bank files; validate before use
- Matching confidences stay within [0, 1]
"""

import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

import yaml

from .errors import NdisClaimsError


class ConfigValidationError(NdisClaimsError):
    """Raised when configuration validation fails."""

    pass


@dataclass
class ExtractionConfig:
    """Invoice text extraction settings."""

    # Quantities outside (0, max_quantity) fall back to 1
    max_quantity: Decimal = Decimal("10000")


@dataclass
class MatchingConfig:
    """Auto-matching settings."""

    # Trailing window for historical matches (days)
    historical_lookback_days: int = 90
    # Occurrences of the top candidate required for a historical match
    historical_min_count: int = 3
    # Confidence of a unique email-domain match
    domain_confidence: float = 0.7
    # Confidence of a historical match
    historical_confidence: float = 0.8


@dataclass
class BankingConfig:
    """ABA (Cemtex) originator settings.

    These values are printed into every header and detail record:
    - bank_code: 3-char financial institution code (e.g. CBA)
    - user_name / user_id: APCA-registered originator name and 6-digit id
    - trace_bsb / trace_account: account the bank returns failed credits to
    """

    bank_code: str = "CBA"
    user_name: str = "Lotus Plan Management"
    user_id: str = "301500"
    description: str = "Claims Payment"
    trace_bsb: str = "062-000"
    trace_account: str = "000000000"
    remitter: str = "Lotus PM"
    filename_prefix: str = "ABA"
    file_extension: str = "aba"


@dataclass
class Config:
    """Application configuration.

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    banking: BankingConfig = field(default_factory=BankingConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.extraction.max_quantity > 0:
            errors.append("extraction.max_quantity must be positive")

        if self.matching.historical_lookback_days <= 0:
            errors.append("matching.historical_lookback_days must be positive")
        if self.matching.historical_min_count < 1:
            errors.append("matching.historical_min_count must be at least 1")
        for name in ("domain_confidence", "historical_confidence"):
            value = getattr(self.matching, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"matching.{name} must be within [0, 1]")

        banking = self.banking
        if len(banking.bank_code) != 3:
            errors.append("banking.bank_code must be exactly 3 characters")
        if not re.fullmatch(r"\d{6}", banking.user_id):
            errors.append("banking.user_id must be 6 digits")
        if not re.fullmatch(r"\d{3}-?\d{3}", banking.trace_bsb):
            errors.append("banking.trace_bsb must be a 6-digit BSB")
        if not banking.user_name.strip():
            errors.append("banking.user_name is required")
        if not banking.filename_prefix:
            errors.append("banking.filename_prefix is required")

        return errors


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    if value:
        try:
            return int(value)
        except ValueError:
            raise ConfigValidationError(f"{name} must be an integer, got {value!r}") from None
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    A missing file yields the defaults. Environment variables can override
    config values:
    - NDIS_CLAIMS_DB_PATH
    - ABA_BANK_CODE
    - ABA_USER_NAME
    - ABA_USER_ID
    - ABA_TRACE_BSB
    - ABA_TRACE_ACCOUNT
    - MATCH_LOOKBACK_DAYS
    """
    if config_path.exists():
        with open(config_path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigValidationError(f"{config_path} is not valid YAML: {e}") from e
    else:
        data = {}

    # Extraction config
    extraction_data = data.get("extraction") or {}
    extraction = ExtractionConfig(
        max_quantity=Decimal(str(extraction_data.get("max_quantity", "10000"))),
    )

    # Matching config
    matching_data = data.get("matching") or {}
    matching = MatchingConfig(
        historical_lookback_days=_env_int(
            "MATCH_LOOKBACK_DAYS", int(matching_data.get("historical_lookback_days", 90))
        ),
        historical_min_count=int(matching_data.get("historical_min_count", 3)),
        domain_confidence=float(matching_data.get("domain_confidence", 0.7)),
        historical_confidence=float(matching_data.get("historical_confidence", 0.8)),
    )

    # Banking config
    banking_data = data.get("banking") or {}
    banking = BankingConfig(
        bank_code=os.environ.get("ABA_BANK_CODE", banking_data.get("bank_code", "CBA")),
        user_name=os.environ.get(
            "ABA_USER_NAME", banking_data.get("user_name", "Lotus Plan Management")
        ),
        # YAML reads 301500 as an int; the field is a digit string
        user_id=str(os.environ.get("ABA_USER_ID", banking_data.get("user_id", "301500"))),
        description=banking_data.get("description", "Claims Payment"),
        trace_bsb=os.environ.get("ABA_TRACE_BSB", banking_data.get("trace_bsb", "062-000")),
        trace_account=str(
            os.environ.get("ABA_TRACE_ACCOUNT", banking_data.get("trace_account", "000000000"))
        ),
        remitter=banking_data.get("remitter", "Lotus PM"),
        filename_prefix=banking_data.get("filename_prefix", "ABA"),
        file_extension=banking_data.get("file_extension", "aba"),
    )

    # State DB
    state_db = os.environ.get("NDIS_CLAIMS_DB_PATH", data.get("state_db_path", "data/state.db"))

    return Config(
        extraction=extraction,
        matching=matching,
        banking=banking,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# NDIS invoice → claim → ABA payment pipeline configuration

# Invoice text extraction
extraction:
  max_quantity: 10000                      # Quantities outside (0, max) default to 1

# Provider / participant auto-matching
matching:
  historical_lookback_days: 90             # Window for sender history
  historical_min_count: 3                  # Occurrences needed for a historical match
  domain_confidence: 0.7                   # Unique email-domain match
  historical_confidence: 0.8               # Historical match

# ABA (Cemtex) originator details, printed into every bank file
banking:
  bank_code: "CBA"                         # 3-char financial institution code
  user_name: "Lotus Plan Management"       # APCA user name (26 chars max)
  user_id: "301500"                        # APCA user id (6 digits)
  description: "Claims Payment"            # Entry description (12 chars max)
  trace_bsb: "062-000"                     # Trace account BSB
  trace_account: "000000000"               # Trace account number
  remitter: "Lotus PM"                     # Remitter name (16 chars max)
  filename_prefix: "ABA"
  file_extension: "aba"

# State database path
state_db_path: "data/state.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
