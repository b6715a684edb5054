"""Configuration loaded from OPSWATCH_* environment variables and .env files."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "OPSWATCH_"
DB_NAME = "opswatch.db"
COOLDOWN_FILE = "cooldown.json"

READ_ONLY_TOOLS = "Bash,Read,Grep,Glob,Task,WebFetch"
WRITE_TOOLS = READ_ONLY_TOOLS + ",Write,Edit"

DEFAULT_TIER_MODELS = {1: "haiku", 2: "sonnet", 3: "opus"}
DEFAULT_TIER_TOOLS = {1: READ_ONLY_TOOLS, 2: WRITE_TOOLS, 3: WRITE_TOOLS}


def _load_env() -> None:
    """Load the nearest .env walking up from CWD. Existing variables win."""
    cwd = Path.cwd()
    for parent in [cwd, *cwd.parents]:
        env_file = parent / ".env"
        if env_file.exists():
            load_dotenv(env_file, override=False)
            return


def _env(name: str, default: str | None = None) -> str | None:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_bool(name: str, default: bool = False) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _split_tools(value: str) -> list[str]:
    return [t.strip() for t in value.split(",") if t.strip()]


@dataclass
class Config:
    state_dir: Path = field(default_factory=lambda: Path(".opswatch"))
    results_dir: Path | None = None
    agent_bin: str = "claude"
    tier_models: dict[int, str] = field(default_factory=lambda: dict(DEFAULT_TIER_MODELS))
    tier_tools: dict[int, list[str]] = field(
        default_factory=lambda: {t: _split_tools(v) for t, v in DEFAULT_TIER_TOOLS.items()}
    )
    max_tier: int = 3
    memory_budget: int = 2000
    summary_model: str = "claude-haiku-4-5"
    anthropic_api_key: str | None = None
    dry_run: bool = False
    kill_grace_seconds: float = 5.0
    log_level: str = "INFO"
    reinforce_threshold: float = 0.85
    contradict_threshold: float = 0.6

    def __post_init__(self):
        self.state_dir = Path(self.state_dir)
        if self.results_dir is None:
            self.results_dir = self.state_dir / "results"
        self.results_dir = Path(self.results_dir)

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> "Config":
        """Build a Config from the environment, loading .env first."""
        _load_env()
        tier_models = {}
        tier_tools = {}
        for tier in DEFAULT_TIER_MODELS:
            tier_models[tier] = _env(f"TIER{tier}_MODEL", DEFAULT_TIER_MODELS[tier])
            tier_tools[tier] = _split_tools(_env(f"TIER{tier}_TOOLS", DEFAULT_TIER_TOOLS[tier]))

        resolved_state = Path(state_dir or _env("STATE_DIR", ".opswatch"))
        results = _env("RESULTS_DIR")
        return cls(
            state_dir=resolved_state,
            results_dir=Path(results) if results else None,
            agent_bin=_env("AGENT_BIN", "claude"),
            tier_models=tier_models,
            tier_tools=tier_tools,
            max_tier=int(_env("MAX_TIER", "3")),
            memory_budget=int(_env("MEMORY_BUDGET", "2000")),
            summary_model=_env("SUMMARY_MODEL", "claude-haiku-4-5"),
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY") or None,
            dry_run=_env_bool("DRY_RUN"),
            kill_grace_seconds=float(_env("KILL_GRACE_SECONDS", "5")),
            log_level=_env("LOG_LEVEL", "INFO"),
            reinforce_threshold=float(_env("REINFORCE_THRESHOLD", "0.85")),
            contradict_threshold=float(_env("CONTRADICT_THRESHOLD", "0.6")),
        )

    @property
    def db_path(self) -> Path:
        return self.state_dir / DB_NAME

    @property
    def cooldown_path(self) -> Path:
        return self.state_dir / COOLDOWN_FILE

    def _check_tier(self, tier: int) -> None:
        if tier < 1 or tier > self.max_tier:
            raise ValueError(f"Tier must be between 1 and {self.max_tier}, got {tier}")

    def tier_model(self, tier: int) -> str:
        self._check_tier(tier)
        return self.tier_models.get(tier) or self.tier_models[max(self.tier_models)]

    def allowed_tools(self, tier: int) -> list[str]:
        self._check_tier(tier)
        return list(self.tier_tools.get(tier) or self.tier_tools[max(self.tier_tools)])

    def env_context(self) -> str:
        """Environment description appended to the agent's system prompt."""
        parts = [
            f"{ENV_PREFIX}DRY_RUN={str(self.dry_run).lower()}",
            f"{ENV_PREFIX}STATE_DIR={self.state_dir}",
            f"{ENV_PREFIX}RESULTS_DIR={self.results_dir}",
        ]
        for tier in sorted(self.tier_models):
            if tier > 1:
                parts.append(f"{ENV_PREFIX}TIER{tier}_MODEL={self.tier_models[tier]}")
        return " ".join(parts)
