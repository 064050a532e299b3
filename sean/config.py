"""YAML configuration loader for Sean.

Loads the two seed config files from the config/ directory:
  categories.yaml  (allocation taxonomy: code, label, keywords)
  settings.yaml    (agent defaults, allocation thresholds, LLM providers)
"""

from pathlib import Path

import yaml

_AGENT_DEFAULTS = {
    "name": "Sean",
    "status": "INACTIVE",
    "authorized_actions": ["ALLOCATE", "RESPOND", "LEARN"],
    "auto_allocate_enabled": False,
    "auto_allocate_interval": 60,
    "auto_allocate_min_confidence": 0.8,
    "llm_fallback_enabled": True,
}


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._categories: list[dict] | None = None
        self._settings: dict | None = None
        self._category_index: dict[str, dict] | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def categories(self) -> list[dict]:
        if self._categories is None:
            data = self._load("categories.yaml")
            if isinstance(data, dict):
                data = data.get("categories", [])
            self._categories = [
                {
                    "code": c["code"],
                    "label": c.get("label", c["code"]),
                    "keywords": [str(k).lower() for k in (c.get("keywords") or [])],
                }
                for c in data
            ]
        return self._categories

    @property
    def settings(self) -> dict:
        if self._settings is None:
            self._settings = self._load("settings.yaml")
        return self._settings

    # ── Categories ──────────────────────────────────────────

    def category_by_code(self, code: str) -> dict | None:
        if self._category_index is None:
            self._category_index = {c["code"]: c for c in self.categories}
        return self._category_index.get(code)

    def category_label(self, code: str) -> str:
        """Display label for a category code, falling back to the code itself."""
        cat = self.category_by_code(code)
        return cat["label"] if cat else code

    @property
    def category_codes(self) -> list[str]:
        return [c["code"] for c in self.categories]

    @property
    def max_keyword_length(self) -> int:
        """Length of the longest keyword across the whole taxonomy."""
        return max(
            (len(kw) for c in self.categories for kw in c["keywords"]),
            default=0,
        )

    # ── Settings ────────────────────────────────────────────

    @property
    def agent_defaults(self) -> dict:
        """Defaults used when the agent row is created on first access."""
        return {**_AGENT_DEFAULTS, **self.settings.get("agent", {})}

    @property
    def allocation(self) -> dict:
        return self.settings.get("allocation", {})

    @property
    def llm(self) -> dict:
        return self.settings.get("llm", {})

    def llm_provider_settings(self, provider: str) -> dict:
        """Model/URL overrides for one provider, keyed by lowercase name."""
        return self.llm.get("providers", {}).get(provider.lower(), {})
