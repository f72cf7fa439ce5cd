"""
orchestrator/shared/config.py
──────────────────────────────
Process-level scheduler configuration.

Two layers of configuration exist and must not be confused:

  SchedulerConfig (this file) → how THIS process scores and executes.
                                Loaded once from the environment (DRS_*)
                                or a .env file. Scoring weights, timeouts,
                                retry policy, error classification.

  DRSSettings (models.py)     → what the OPERATOR chose for one cluster.
                                Fetched from the settings store every tick.
                                Mode, threshold, concurrency ceiling.

Usage:
    from orchestrator.shared.config import load_config, setup_logging

    config = load_config()
    setup_logging(config.log_level)
"""

from __future__ import annotations

import logging
import sys
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchedulerConfig(BaseSettings):
    """
    Tunables for the scorer, the engine and the migration orchestrator.

    Scoring:
        cpu_weight / mem_weight   → Relative weight of each dimension in the
                                    imbalance score. Normalised to sum to 1.
        max_cpu_deviation         → Standard deviation (percentage points)
        max_mem_deviation           at which a dimension counts as fully
                                    imbalanced.

    Engine:
        max_recommendations       → Cap on recommendations produced per tick.
        should_rule_penalty       → Score points subtracted from a candidate's
                                    ranking gain per violated SHOULD rule.

    Execution:
        migration_timeout_s       → Per-attempt limit on start + polling.
        poll_interval_s           → Delay between status polls.
        max_attempts              → Attempts per job (2 = one retry).
        transient_error_markers   → Case-insensitive substrings marking a
                                    failure as transient (retryable).
        permanent_error_markers   → Substrings that force a permanent
                                    classification; checked first.
    """

    model_config = SettingsConfigDict(
        env_prefix="DRS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Scoring ───────────────────────────────────────────────────────────────
    cpu_weight: float = Field(0.5, ge=0.0)
    mem_weight: float = Field(0.5, ge=0.0)
    max_cpu_deviation: float = Field(30.0, gt=0.0)
    max_mem_deviation: float = Field(30.0, gt=0.0)

    # ── Engine ────────────────────────────────────────────────────────────────
    max_recommendations: int = Field(10, ge=1)
    should_rule_penalty: float = Field(5.0, ge=0.0)

    # ── Execution ─────────────────────────────────────────────────────────────
    migration_timeout_s: float = Field(1800.0, gt=0.0)
    poll_interval_s: float = Field(5.0, gt=0.0)
    max_attempts: int = Field(2, ge=1)
    transient_error_markers: List[str] = Field(default_factory=lambda: [
        "timeout",
        "timed out",
        "unreachable",
        "connection",
        "network",
        "temporarily",
    ])
    permanent_error_markers: List[str] = Field(default_factory=lambda: [
        "insufficient",
        "incompatible",
        "rule violation",
        "validation",
        "not found",
    ])

    # ── Logging ───────────────────────────────────────────────────────────────
    log_level: str = Field("INFO")

    @field_validator("mem_weight")
    @classmethod
    def _weights_not_both_zero(cls, v: float, info) -> float:
        if v == 0.0 and info.data.get("cpu_weight", 0.0) == 0.0:
            raise ValueError("cpu_weight and mem_weight cannot both be 0")
        return v

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return level


def load_config(**overrides) -> SchedulerConfig:
    """Build the configuration from the environment, applying keyword overrides."""
    return SchedulerConfig(**overrides)


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with a single stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(handler)
