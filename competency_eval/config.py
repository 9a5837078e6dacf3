import sys
from pathlib import Path

from pydantic_settings import BaseSettings

from competency_eval.services.tiers import is_valid_tier

DATA_DIR = Path(__file__).resolve().parent / "data"


class Settings(BaseSettings):
    # Database path - can be overridden via DATABASE_PATH env var for Docker
    database_path: str = "competency_eval.db"
    # Environment: "dev" (default) or "prod"
    env: str = "dev"
    # CORS origins for prod (comma-separated)
    cors_origins: str = ""
    # Tier assigned to a profile that is created lazily (before any placement)
    default_tier: str = "A2"
    # Externally authored content (tier requirements, placement questions)
    requirements_path: str = str(DATA_DIR / "tier_requirements.yaml")
    questions_path: str = str(DATA_DIR / "placement_questions.yaml")
    # Advisory memoization windows
    evaluator_cache_ttl_seconds: float = 5 * 60
    progress_cache_ttl_seconds: float = 2 * 60
    recommendation_cache_ttl_seconds: float = 10 * 60
    cache_max_entries: int = 1024
    # A recommendation id is not shown again inside this window
    recommendation_cooldown_seconds: float = 24 * 60 * 60
    # Retries for transient store errors (e.g. "database is locked")
    store_retry_attempts: int = 3
    store_retry_wait_seconds: float = 0.1

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def _load_settings() -> Settings:
    """Load settings and validate the values the engines cannot recover from."""
    s = Settings()

    if not is_valid_tier(s.default_tier):
        print(f"ERROR: DEFAULT_TIER must be one of A1..C2, got {s.default_tier!r}.", file=sys.stderr)
        sys.exit(1)

    for label, path in (("REQUIREMENTS_PATH", s.requirements_path), ("QUESTIONS_PATH", s.questions_path)):
        if not Path(path).is_file():
            print(f"ERROR: {label} points to a missing file: {path}", file=sys.stderr)
            sys.exit(1)

    if s.store_retry_attempts < 1:
        print("ERROR: STORE_RETRY_ATTEMPTS must be at least 1.", file=sys.stderr)
        sys.exit(1)

    return s


settings = _load_settings()
