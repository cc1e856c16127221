from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Annotated

import msgspec

# Environment variable names for secrets
ENV_BOT_TOKEN = "LINKSHIELD_BOT_TOKEN"
LEGACY_ENV_BOT_TOKEN = "BOT_TOKEN"

HOME_CONFIG_PATH = Path.home() / ".linkshield" / "config.toml"

CONFIG_TEMPLATE = """\
# linkshield configuration

# Emit verbose (debug) logs. --verbose / --no-verbose override this.
verbose = false

# Seconds to wait for a single getUpdates call before retrying.
poller_timeout = 10

# Seconds a single update may spend in its handler.
handler_timeout = 20

# Seconds Telegram keeps a getUpdates call open while waiting for updates.
# Must be lower than poller_timeout.
long_poll_timeout = 1

# Upper bound on updates handled at the same time (unbounded when unset).
# max_concurrent_handlers = 16

# Moderated chat id = reference chat id.
# Join requests to the moderated chat are approved only for users that are
# members of the reference chat. The bot must be an administrator in both.
[directives]
# "-1001234567890" = -1009876543210
"""

PositiveSeconds = Annotated[float, msgspec.Meta(gt=0)]


class ConfigError(RuntimeError):
    pass


class Settings(msgspec.Struct, forbid_unknown_fields=True, kw_only=True):
    verbose: bool = False
    poller_timeout: PositiveSeconds = 10
    handler_timeout: PositiveSeconds = 20
    long_poll_timeout: Annotated[int, msgspec.Meta(ge=0)] = 1
    max_concurrent_handlers: Annotated[int, msgspec.Meta(ge=1)] | None = None
    directives: dict[int, int] = msgspec.field(default_factory=dict)


def parse_settings(data: Mapping[str, object], config_path: Path) -> Settings:
    try:
        settings = msgspec.convert(data, type=Settings, str_keys=True)
    except msgspec.ValidationError as e:
        raise ConfigError(f"Invalid config in {config_path}: {e}") from None
    # getUpdates must be able to return before its own deadline expires.
    if settings.long_poll_timeout >= settings.poller_timeout:
        raise ConfigError(
            f"Invalid config in {config_path}: `long_poll_timeout` "
            f"({settings.long_poll_timeout}) must be lower than `poller_timeout` "
            f"({settings.poller_timeout})."
        )
    return settings


def _read_config(cfg_path: Path) -> dict:
    if cfg_path.is_dir():
        raise ConfigError(
            f"Config path {cfg_path} is a directory; expected a file."
        )
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None


def write_config_template(cfg_path: Path) -> None:
    try:
        cfg_path.parent.mkdir(parents=True, exist_ok=True)
        cfg_path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to generate config file {cfg_path}: {e}") from e


def load_or_init_config(
    path: str | Path | None = None,
) -> tuple[Settings | None, Path]:
    """Load settings, writing a template when the file does not exist yet.

    Returns ``(None, path)`` when the template was just generated, so the
    caller can ask the user to fill it in.
    """
    cfg_path = Path(path).expanduser() if path else HOME_CONFIG_PATH
    if not cfg_path.exists():
        write_config_template(cfg_path)
        return None, cfg_path
    return parse_settings(_read_config(cfg_path), cfg_path), cfg_path


def get_bot_token(environ: Mapping[str, str] | None = None) -> str:
    """Get the bot token from the environment.

    LINKSHIELD_BOT_TOKEN takes precedence over BOT_TOKEN.
    """
    env = os.environ if environ is None else environ
    for name in (ENV_BOT_TOKEN, LEGACY_ENV_BOT_TOKEN):
        token = env.get(name)
        if token and token.strip():
            return token.strip()
    raise ConfigError(f"Missing {LEGACY_ENV_BOT_TOKEN} environment variable.")
