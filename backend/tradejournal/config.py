"""
Engine settings persisted as JSON next to the journal state.

A missing, unreadable or invalid file never stops the engine: the defaults
of ``EngineConfig`` are used instead and the problem is logged.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from .models import AccountingBasis, EngineConfig

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "TRADE_JOURNAL_CONFIG_PATH"


class ConfigManager:
    """Lazily loads, validates and saves the engine settings file."""

    DEFAULT_CONFIG_PATH = Path.home() / ".trade-journal" / "config.json"

    def __init__(self, config_path: Path | None = None):
        self.config_path = Path(config_path) if config_path else self.DEFAULT_CONFIG_PATH
        self._config: EngineConfig | None = None

    def get_config(self) -> EngineConfig:
        if self._config is None:
            self._config = self._read()
        return self._config

    def set_config(self, config: EngineConfig) -> EngineConfig:
        """
        Replace the active settings and write them out.

        Raises:
            ValueError: listing every rule the settings break
        """
        problems = ConfigValidator.validate_engine_config(config)
        if problems:
            raise ValueError("; ".join(problems))
        self._config = config
        self._write(config)
        return config

    def update_default_basis(self, basis: AccountingBasis) -> EngineConfig:
        return self.set_config(self.get_config().model_copy(update={"default_basis": basis}))

    def _read(self) -> EngineConfig:
        if not self.config_path.exists():
            logger.info(f"No engine config at {self.config_path}, using defaults")
            return EngineConfig()

        try:
            raw = json.loads(self.config_path.read_text(encoding="utf-8"))
            config = EngineConfig.model_validate(raw)
        except Exception as e:
            logger.error(f"Unreadable engine config {self.config_path}: {e}")
            return EngineConfig()

        problems = ConfigValidator.validate_engine_config(config)
        if problems:
            logger.error(f"Rejected engine config {self.config_path} ({'; '.join(problems)}), using defaults")
            return EngineConfig()
        return config

    def _write(self, config: EngineConfig) -> None:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(
                json.dumps(config.model_dump(), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
            logger.info(f"Engine config written to {self.config_path}")
        except OSError as e:
            # in-memory settings stay active
            logger.error(f"Could not write engine config {self.config_path}: {e}")


class ConfigValidator:
    @staticmethod
    def validate_engine_config(config: EngineConfig) -> list[str]:
        """Return one message per broken rule; an empty list means valid."""
        errors: list[str] = []

        if config.default_portfolio_size <= 0:
            errors.append("default_portfolio_size must be positive")
        if not 0 <= config.annual_risk_free_rate < 1:
            errors.append("annual_risk_free_rate must be in [0, 1)")
        if config.trading_days_per_year <= 0:
            errors.append("trading_days_per_year must be positive")
        if config.rolling_volatility_window < 2:
            errors.append("rolling_volatility_window must be at least 2")
        for name in ("sharpe_bound", "sortino_bound", "calmar_bound", "profit_factor_cap"):
            if getattr(config, name) <= 0:
                errors.append(f"{name} must be positive")
        if config.min_valid_year > config.max_valid_year:
            errors.append("min_valid_year cannot be after max_valid_year")

        return errors


def create_config_manager(config_path: str | None = None) -> ConfigManager:
    """Build a manager for ``config_path``, else ``$TRADE_JOURNAL_CONFIG_PATH``, else the home default."""
    raw = config_path or os.environ.get(CONFIG_PATH_ENV)
    return ConfigManager(config_path=Path(raw) if raw else None)
