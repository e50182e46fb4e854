"""Memory system configuration loader.

Loads configuration from ~/.recollect/config.json and applies environment
overrides. Missing or invalid values fall back to defaults.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".recollect"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"
DEFAULT_DB_PATH = DEFAULT_HOME / "memory" / "user_memory.db"

ENV_DB_PATH = "RECOLLECT_DB_PATH"
ENV_LLM_MODEL = "RECOLLECT_LLM_MODEL"


@dataclass
class RankingConfig:
    """Weights and floors for the context ranker.

    Attributes:
        min_similarity: Candidates less similar than this are never used.
        min_score: Candidates whose composite score is lower are dropped.
        confidence_weight: How much confidence scales the score (0..1).
        recency_weight: How much recency scales the score (0..1).
        recency_half_life_days: Age at which the recency signal halves.
    """

    min_similarity: float = 0.25
    min_score: float = 0.15
    confidence_weight: float = 1.0
    recency_weight: float = 0.5
    recency_half_life_days: float = 30.0

    def __post_init__(self) -> None:
        for name in ("confidence_weight", "recency_weight"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0.0 and 1.0")
        if self.recency_half_life_days <= 0:
            raise ValueError("recency_half_life_days must be positive")


@dataclass
class MemoryConfig:
    """Configuration for the memory system.

    Attributes:
        db_path: SQLite file holding facts, vectors and conversations.
        embedding_model: sentence-transformers model id.
        llm_model: Model used for fact extraction.
        extraction_threshold: Unprocessed messages that trigger extraction.
        extraction_window: Most recent unprocessed messages sent to the LLM.
        duplicate_threshold: Similarity at which a new fact is a duplicate.
        reinforce_step: Confidence added to a fact mentioned again.
        context_limit: Facts included in a context block.
        candidate_pool_size: Nearest candidates fetched before re-ranking.
        search_min_similarity: Floor for semantic fact search.
        recent_days: Window for the "recent facts" statistic.
        log_dir: Directory for JSONL event logs.
        ranking: Context ranker weights.
    """

    db_path: Path = DEFAULT_DB_PATH
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    llm_model: str = "llama-3.3-70b-versatile"
    extraction_threshold: int = 3
    extraction_window: int = 6
    duplicate_threshold: float = 0.92
    reinforce_step: float = 0.1
    context_limit: int = 5
    candidate_pool_size: int = 20
    search_min_similarity: float = 0.3
    recent_days: int = 7
    log_dir: Path | None = None
    ranking: RankingConfig = field(default_factory=RankingConfig)

    def __post_init__(self) -> None:
        """Validate config and normalize paths."""
        self.db_path = Path(self.db_path).expanduser()
        if self.log_dir is None:
            self.log_dir = DEFAULT_HOME / "logs"
        self.log_dir = Path(self.log_dir).expanduser()

        if self.extraction_threshold < 1:
            raise ValueError("extraction_threshold must be at least 1")
        if self.extraction_window < 1:
            raise ValueError("extraction_window must be at least 1")
        if self.context_limit < 1:
            raise ValueError("context_limit must be at least 1")
        if self.candidate_pool_size < self.context_limit:
            raise ValueError("candidate_pool_size must be at least context_limit")
        if not 0.0 < self.duplicate_threshold <= 1.0:
            raise ValueError("duplicate_threshold must be in (0.0, 1.0]")
        if not 0.0 <= self.reinforce_step <= 1.0:
            raise ValueError("reinforce_step must be between 0.0 and 1.0")


def load_config(config_path: Path | None = None) -> MemoryConfig:
    """Load MemoryConfig from a JSON file plus environment overrides.

    The config file should have this structure:
    ```json
    {
      "memory": {
        "db_path": "~/.recollect/memory/user_memory.db",
        "extraction_threshold": 3,
        "context_limit": 5
      },
      "ranking": {
        "recency_weight": 0.5
      }
    }
    ```

    Args:
        config_path: Path to config file. Uses DEFAULT_CONFIG_PATH if None.

    Returns:
        MemoryConfig instance with loaded values.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    data: dict[str, Any] = {}

    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
    else:
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON in %s: %s. Using defaults.", path, e)
        except OSError as e:
            logger.warning("Cannot read %s: %s. Using defaults.", path, e)

    if not isinstance(data, dict):
        data = {}

    config = _parse_config(data)

    db_override = os.getenv(ENV_DB_PATH)
    if db_override:
        config.db_path = Path(db_override).expanduser()
    model_override = os.getenv(ENV_LLM_MODEL)
    if model_override:
        config.llm_model = model_override

    return config


def _pick(section: Any, cls: type) -> dict[str, Any]:
    """Keep only the keys that are fields of ``cls``."""
    if not isinstance(section, dict):
        return {}
    names = {f.name for f in fields(cls)} - {"ranking"}
    unknown = set(section) - names
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
    return {k: v for k, v in section.items() if k in names}


def _parse_config(data: dict[str, Any]) -> MemoryConfig:
    """Parse config dictionary into MemoryConfig.

    Invalid values are reported and replaced by defaults.
    """
    try:
        ranking = RankingConfig(**_pick(data.get("ranking", {}), RankingConfig))
    except (TypeError, ValueError) as e:
        logger.warning("Invalid ranking config: %s. Using defaults.", e)
        ranking = RankingConfig()

    try:
        return MemoryConfig(ranking=ranking, **_pick(data.get("memory", {}), MemoryConfig))
    except (TypeError, ValueError) as e:
        logger.warning("Invalid memory config: %s. Using defaults.", e)
        return MemoryConfig(ranking=ranking)


def save_config(config: MemoryConfig, config_path: Path | None = None) -> None:
    """Save MemoryConfig to a JSON file, writing only non-default values.

    Args:
        config: The config to save.
        config_path: Path to write to. Uses DEFAULT_CONFIG_PATH if None.
    """
    path = config_path or DEFAULT_CONFIG_PATH

    # Ensure parent directory exists
    path.parent.mkdir(parents=True, exist_ok=True)

    defaults = MemoryConfig()
    memory_data: dict[str, Any] = {}
    for f in fields(MemoryConfig):
        if f.name == "ranking":
            continue
        value = getattr(config, f.name)
        if value != getattr(defaults, f.name):
            memory_data[f.name] = str(value) if isinstance(value, Path) else value

    ranking_defaults = RankingConfig()
    ranking_data = {
        f.name: getattr(config.ranking, f.name)
        for f in fields(RankingConfig)
        if getattr(config.ranking, f.name) != getattr(ranking_defaults, f.name)
    }

    data: dict[str, Any] = {}
    if memory_data:
        data["memory"] = memory_data
    if ranking_data:
        data["ranking"] = ranking_data

    try:
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
    except OSError as e:
        logger.error("Failed to save config to %s: %s", path, e)
        raise
