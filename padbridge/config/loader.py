"""Load, override and save the padbridge JSON config (camelCase on disk)."""

import json
import os
import re
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from loguru import logger

from padbridge.config.schema import Config, DmPolicy

load_dotenv(override=False)

# Keys whose child keys are identifiers (account ids), not field names.
_ID_KEYED_MAPS = frozenset({"accounts"})
_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def get_config_path() -> Path:
    """``PADBRIDGE_CONFIG_PATH`` or ``~/.padbridge/config.json``."""
    if val := os.environ.get("PADBRIDGE_CONFIG_PATH"):
        return Path(val).expanduser()
    return Path.home() / ".padbridge" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Read the config file (defaults when absent or invalid), then env overrides.

    Flat ``PADBRIDGE_*`` variables (and ``.env``) win over the file, which wins
    over the model defaults.
    """
    path = config_path or get_config_path()
    config = _read_file(path) if path.exists() else Config()
    _apply_env_overrides(config)
    return config


def _read_file(path: Path) -> Config:
    try:
        return config_from_dict(json.loads(path.read_text(encoding="utf-8")))
    except ValueError as e:
        logger.warning(f"Ignoring unreadable config {path} ({e}); using defaults")
        return Config()


def config_from_dict(data: dict[str, Any]) -> Config:
    """Build a :class:`Config` from a camelCase dict (as stored on disk)."""
    return Config.model_validate(convert_keys(data))


# ---------------------------------------------------------------------------
# Flat env-var overrides: single-account setups without a config file
# ---------------------------------------------------------------------------


def _split_list(val: str) -> list[str]:
    return [v.strip() for v in val.split(",") if v.strip()]


def _apply_env_overrides(config: Config) -> None:
    """Apply flat PADBRIDGE_* env vars on top of the loaded config."""
    section = config.channels.wechatpadpro

    # --- gateway credentials ---
    if val := os.environ.get("PADBRIDGE_SERVER_URL"):
        section.server_url = val
    if val := os.environ.get("PADBRIDGE_AUTHCODE"):
        section.authcode = val
    if val := os.environ.get("PADBRIDGE_WXID"):
        section.wxid = val
    if val := os.environ.get("PADBRIDGE_WEBHOOK_BASE_URL"):
        section.webhook_base_url = val

    # --- access policy ---
    if val := os.environ.get("PADBRIDGE_DM_POLICY"):
        try:
            section.dm_policy = DmPolicy(val.strip().lower())
        except ValueError:
            logger.warning(f"Ignoring unknown PADBRIDGE_DM_POLICY={val!r}")
    if val := os.environ.get("PADBRIDGE_ALLOW_FROM"):
        section.allow_from = _split_list(val)
    if val := os.environ.get("PADBRIDGE_TRIGGER_KEYWORDS"):
        section.trigger_keywords = _split_list(val)

    # --- responder ---
    if val := os.environ.get("PADBRIDGE_RESPONDER"):
        config.responder.kind = val.strip().lower()
    if val := os.environ.get("PADBRIDGE_MODEL"):
        config.responder.model = val
    if val := os.environ.get("PADBRIDGE_LLM_API_KEY"):
        config.responder.api_key = val
    if val := os.environ.get("PADBRIDGE_LLM_API_BASE"):
        config.responder.api_base = val


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Write *config* back as camelCase JSON, omitting unset (``None``) fields."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(mode="json", exclude_none=True)
    data = convert_to_camel(data)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic.

    Children of id-keyed maps (``accounts``) keep their keys verbatim.
    """
    if isinstance(data, dict):
        out: dict[str, Any] = {}
        for k, v in data.items():
            key = camel_to_snake(k)
            if key in _ID_KEYED_MAPS and isinstance(v, dict):
                out[key] = {ident: convert_keys(item) for ident, item in v.items()}
            else:
                out[key] = convert_keys(v)
        return out
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Inverse of :func:`convert_keys`, used when saving."""
    if isinstance(data, dict):
        out: dict[str, Any] = {}
        for k, v in data.items():
            if k in _ID_KEYED_MAPS and isinstance(v, dict):
                out[snake_to_camel(k)] = {ident: convert_to_camel(item) for ident, item in v.items()}
            else:
                out[snake_to_camel(k)] = convert_to_camel(v)
        return out
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    return _CAMEL_RE.sub("_", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)
