"""
verse.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for the gameplay economy (entry fee, daily limits,
winner bonuses) and a few presentation knobs.  Secrets and infrastructure
(database URL, JWT secret, OAuth credentials) stay in the environment.

Usage::

    from verse.config import load_config

    cfg = load_config()              # ./config.yaml, or $VERSE_CONFIG
    print(cfg.entry_fee)             # 10
    print(cfg.winner_bonus("poll"))  # 10
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"


def _default_bonuses() -> dict[str, int]:
    return {"challenge": 20, "poll": 10}


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class VerseConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every field has a default so a fresh checkout runs without a config
    file; production deployments are expected to ship one.
    """

    # Economy
    starting_points: int = 50
    entry_fee: int = 10
    daily_entry_limit: int = 3
    vote_reward: int = 1
    daily_vote_cap: int = 10
    match_window_hours: int = 24
    winner_bonuses: dict[str, int] = field(default_factory=_default_bonuses)

    # Calendar used for "since local midnight" counters
    timezone: str = "UTC"

    # Feed / conversation paging
    feed_default_limit: int = 10
    feed_max_limit: int = 50
    conversation_max_limit: int = 100

    # Auth
    token_ttl_days: int = 20

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def winner_bonus(self, kind: str) -> int:
        """Points paid to the winning side of a finalized entry of *kind*."""
        try:
            return self.winner_bonuses[kind]
        except KeyError:
            raise KeyError(f"No winner bonus configured for kind {kind!r}") from None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path | None = None) -> VerseConfig:
    """Read *path* and return a :class:`VerseConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  When omitted,
        ``$VERSE_CONFIG`` is used, then ``config.yaml`` in the working
        directory.  A missing *default* file yields built-in defaults.

    Raises
    ------
    FileNotFoundError
        If an explicitly requested file doesn't exist.
    ValueError
        If a value has the wrong type or is negative.
    """
    explicit = path is not None or bool(os.getenv("VERSE_CONFIG"))
    config_path = Path(path or os.getenv("VERSE_CONFIG") or DEFAULT_CONFIG_PATH)

    if not config_path.exists():
        if explicit:
            raise FileNotFoundError(
                f"Configuration file not found: {config_path.resolve()}"
            )
        logger.info("No %s found, using built-in economy defaults", config_path)
        return VerseConfig()

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    economy = raw.get("economy", {})
    paging = raw.get("paging", {})
    defaults = VerseConfig()

    def _int(section: dict, key: str, default: int) -> int:
        value = int(section.get(key, default))
        if value < 0:
            raise ValueError(f"{key} must be >= 0, got {value}")
        return value

    bonuses = dict(defaults.winner_bonuses)
    for kind, amount in (economy.get("winner_bonuses") or {}).items():
        bonuses[str(kind)] = int(amount)

    tz_name = str(raw.get("timezone", defaults.timezone))
    ZoneInfo(tz_name)  # fail fast on unknown zones

    return VerseConfig(
        starting_points=_int(economy, "starting_points", defaults.starting_points),
        entry_fee=_int(economy, "entry_fee", defaults.entry_fee),
        daily_entry_limit=_int(economy, "daily_entry_limit", defaults.daily_entry_limit),
        vote_reward=_int(economy, "vote_reward", defaults.vote_reward),
        daily_vote_cap=_int(economy, "daily_vote_cap", defaults.daily_vote_cap),
        match_window_hours=_int(economy, "match_window_hours", defaults.match_window_hours),
        winner_bonuses=bonuses,
        timezone=tz_name,
        feed_default_limit=_int(paging, "feed_default_limit", defaults.feed_default_limit),
        feed_max_limit=_int(paging, "feed_max_limit", defaults.feed_max_limit),
        conversation_max_limit=_int(
            paging, "conversation_max_limit", defaults.conversation_max_limit
        ),
        token_ttl_days=_int(raw.get("auth", {}), "token_ttl_days", defaults.token_ttl_days),
    )
