import logging
import os

from pydantic import BaseModel, Field

from tidechat.provider import DEFAULT_BASE_URL

LOG_FORMAT = "%(asctime)s:%(name)s:%(levelname)s:%(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

ENV_PREFIX = "TIDECHAT_"


class Settings(BaseModel):
    """Tunables of a chat session.

    ``max_rounds`` bounds the tool-calling loop of every exchange and
    must stay small; the loop always terminates after that many rounds.
    """

    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    model: str = ""
    max_rounds: int = Field(default=4, ge=1)
    max_messages: int = Field(default=20, ge=1)
    render_delay: float = Field(default=0.06, ge=0)
    scroll_threshold: float = Field(default=180, ge=0)
    include_reasoning: bool = True

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "Settings":
        """Read ``TIDECHAT_*`` variables, e.g. ``TIDECHAT_MAX_ROUNDS=3``."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        return cls.model_validate(values)


def configure_logging(
    level: int = logging.INFO, log_file: str | None = None,
) -> None:
    """Install tidechat's log format on the root logger."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
    )
