# sheet_analyst/boot/load_settings.py

import os
import yaml
import argparse
import logging
from typing import Dict, Any, Optional

_log = logging.getLogger(__name__)

SETTINGS_ENV_VAR = "SHEET_ANALYST_SETTINGS"


class AppConfigLoader:
    """
    Process-wide settings holder.

    - Loads the base YAML from settings/analyst-settings.yaml
      (or the path in $SHEET_ANALYST_SETTINGS)
    - get_config() hands out a shallow copy
    - merge_with_args() layers command-line flags on top
    """
    _instance = None
    _config: Optional[Dict[str, Any]] = None

    def __new__(cls) -> "AppConfigLoader":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if self._config is None:
            _log.info("Reading analyst settings.")
            self._load_from_yaml()

    @classmethod
    def reset(cls) -> None:
        """Forget the cached settings so the next instance reloads them."""
        cls._instance = None
        cls._config = None

    # ──────────────────────────────────────────────────────────────────────────
    # Internal loading
    # ──────────────────────────────────────────────────────────────────────────
    def _settings_path(self) -> str:
        override = os.getenv(SETTINGS_ENV_VAR)
        if override:
            return override
        # project_root = repo root (two levels up from sheet_analyst/boot/)
        project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
        return os.path.join(project_root, "settings", "analyst-settings.yaml")

    def _load_from_yaml(self) -> None:
        """
        Parse the settings YAML into the class-level cache.
        """
        settings_path = self._settings_path()
        try:
            with open(settings_path, "r", encoding="utf-8") as fh:
                type(self)._config = yaml.safe_load(fh) or {}
                _log.info("Analyst settings read from %s", settings_path)
        except FileNotFoundError:
            _log.warning("No settings file at %s; continuing with built-in defaults.", settings_path)
            type(self)._config = {}
        except yaml.YAMLError as exc:
            _log.error("Failed to parse settings: %s", exc, exc_info=True)
            type(self)._config = {}

    # ──────────────────────────────────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────────────────────────────────
    def get_config(self) -> Dict[str, Any]:
        """
        Return a copy of the loaded settings (one level deep).
        """
        return {
            k: dict(v) if isinstance(v, dict) else v
            for k, v in (self._config or {}).items()
        }

    def merge_with_args(self, args: argparse.Namespace) -> Dict[str, Any]:
        """
        Overlay command-line flags on the YAML settings; flags win.
        The cached settings are left untouched.
        """
        cfg = self.get_config()

        # Agent overrides (model and compile strategy)
        agent_cfg = cfg.setdefault("agent", {})
        if getattr(args, "model", None) is not None:
            agent_cfg["llm_model"] = args.model
        if getattr(args, "strategy", None) is not None:
            agent_cfg["strategy"] = args.strategy

        log_cfg = cfg.setdefault("logging", {})
        if getattr(args, "verbose", False) or getattr(args, "debug", False):
            log_cfg["level"] = "DEBUG"

        _log.debug("Effective settings: %s", cfg)
        return cfg
