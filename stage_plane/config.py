"""Configuration loading for the publish engine."""

import os
from dataclasses import dataclass, field

from dotenv import find_dotenv, load_dotenv

from stage_plane.base import Author

DEFAULT_BRANCH = "main"
DEFAULT_AUTHOR_NAME = "Stage Plane"
DEFAULT_AUTHOR_EMAIL = "noreply@stage-plane.invalid"
DEFAULT_VIDEOS_FOLDER = "content/3.videos"
DEFAULT_FAN_OUT = 10
MAX_FAN_OUT = 20


class ConfigError(Exception):
    """Raised when required configuration is missing or malformed."""
    pass


@dataclass
class PublishConfig:
    """Everything the executor needs from its environment, passed explicitly."""

    target: str
    branch: str = DEFAULT_BRANCH
    token: str | None = None
    author_name: str = DEFAULT_AUTHOR_NAME
    author_email: str = DEFAULT_AUTHOR_EMAIL
    categories: dict[str, str] = field(default_factory=dict)
    fan_out: int = DEFAULT_FAN_OUT
    create_wins_over_delete: bool = True

    def __post_init__(self) -> None:
        self.fan_out = max(1, min(MAX_FAN_OUT, self.fan_out))

    @property
    def author(self) -> Author:
        return Author(self.author_name, self.author_email)


def load_config(require_token: bool = True, target: str | None = None) -> PublishConfig:
    """
    Load configuration from environment variables (and a .env file if present).

    Args:
        require_token: If False, GITHUB_TOKEN may be absent (local git remotes).
        target: Repository identifier overriding GITHUB_REPO.

    Raises:
        ConfigError: If required variables are missing or malformed.
    """
    load_dotenv(find_dotenv(usecwd=True))

    token = os.environ.get("GITHUB_TOKEN")
    target = target or os.environ.get("GITHUB_REPO")

    missing = []
    if require_token and not token:
        missing.append("GITHUB_TOKEN")
    if not target:
        missing.append("GITHUB_REPO")
    if missing:
        raise ConfigError(
            f"Missing required environment variables: {', '.join(missing)}\n"
            f"Please set them in your environment or create a .env file."
        )

    fan_out_raw = os.environ.get("STAGE_PLANE_FAN_OUT", str(DEFAULT_FAN_OUT))
    try:
        fan_out = int(fan_out_raw)
    except ValueError:
        raise ConfigError(f"STAGE_PLANE_FAN_OUT must be an integer, got {fan_out_raw!r}")

    categories = {}
    articles_folder = os.environ.get("GITHUB_FOLDER", "")
    if articles_folder:
        categories["articles"] = articles_folder
    videos_folder = os.environ.get("GITHUB_VIDEOS_FOLDER", DEFAULT_VIDEOS_FOLDER)
    if videos_folder:
        categories["videos"] = videos_folder

    return PublishConfig(
        target=target,
        branch=os.environ.get("GITHUB_BRANCH") or DEFAULT_BRANCH,
        token=token,
        author_name=os.environ.get("GITHUB_AUTHOR_NAME") or DEFAULT_AUTHOR_NAME,
        author_email=os.environ.get("GITHUB_AUTHOR_EMAIL") or DEFAULT_AUTHOR_EMAIL,
        categories=categories,
        fan_out=fan_out,
    )
