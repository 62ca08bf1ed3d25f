#!/usr/bin/env python3
"""The .env file shared by the installer and docker compose.

One KEY=value per line, comments start with '#'. The file holds the web UI
secret, so it is kept at mode 0600 after every write.
"""

import base64
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path

import bcrypt
from dotenv import dotenv_values, set_key, unset_key

log = logging.getLogger("wgeasy.env")

ENV_FILE = ".env"
DEFAULT_WG_PORT = 51820
DEFAULT_UI_PORT = 51821
DEFAULT_DNS = "1.1.1.1, 1.0.0.1"
DEFAULT_ALLOWED_IPS = "0.0.0.0/0, ::/0"
DEFAULT_ADDRESS = "10.8.0.x"
DEFAULT_MTU = 1420
DEFAULT_KEEPALIVE = 25
DEFAULT_IMAGE = "ghcr.io/wg-easy/wg-easy:13"
HASHED_IMAGE = "ghcr.io/wg-easy/wg-easy:14"
PASSWORD_LENGTH = 25

ENV_TEMPLATE = """# WireGuard Configuration
WG_HOST={host}
PASSWORD={password}

# Optional: Change default port if needed (default: 51820)
# WG_PORT=51820

# Optional: Change web UI port (default: 51821)
# WG_UI_PORT=51821

# Optional: Default DNS servers (default: 1.1.1.1, 1.0.0.1)
# WG_DEFAULT_DNS=1.1.1.1, 1.0.0.1

# Optional: Allowed IPs (default: 0.0.0.0/0, ::/0 for all traffic)
# WG_ALLOWED_IPS=0.0.0.0/0, ::/0

# Optional: Client address range (default: 10.8.0.x)
# WG_DEFAULT_ADDRESS=10.8.0.x

# Optional: Interface MTU (default: 1420)
# WG_MTU=1420
"""


class ConfigError(Exception):
    """A value in the .env file cannot be used."""


@dataclass
class Settings:
    wg_host: str = ""
    password: str = ""
    password_hash: str = ""
    wg_port: int = DEFAULT_WG_PORT
    wg_ui_port: int = DEFAULT_UI_PORT
    default_dns: str = DEFAULT_DNS
    allowed_ips: str = DEFAULT_ALLOWED_IPS
    default_address: str = DEFAULT_ADDRESS
    mtu: int = DEFAULT_MTU
    persistent_keepalive: int = DEFAULT_KEEPALIVE
    image: str = DEFAULT_IMAGE


def env_path(directory) -> Path:
    return Path(directory) / ENV_FILE


def secure_file(path):
    """Restrict ``path`` to owner read/write."""
    os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)


def read_env(path) -> dict:
    """Return the key/value pairs of ``path`` (empty dict if it does not exist)."""
    if not os.path.exists(path):
        return {}
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def _parse_port(values: dict, key: str, default: int) -> int:
    raw = values.get(key)
    if raw in (None, ""):
        return default
    try:
        port = int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")
    if not 1 <= port <= 65535:
        raise ConfigError(f"{key} must be between 1 and 65535, got {port}")
    return port


def _parse_int(values: dict, key: str, default: int) -> int:
    raw = values.get(key)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")


def load_settings(path) -> Settings:
    """Load settings from the .env file, filling in defaults.

    Args:
        path: Path to the .env file (may not exist)

    Returns:
        Settings instance

    Raises:
        ConfigError: If a port or numeric value is malformed
    """
    values = read_env(path)
    return Settings(
        wg_host=values.get("WG_HOST", ""),
        password=values.get("PASSWORD", ""),
        password_hash=values.get("PASSWORD_HASH", ""),
        wg_port=_parse_port(values, "WG_PORT", DEFAULT_WG_PORT),
        wg_ui_port=_parse_port(values, "WG_UI_PORT", DEFAULT_UI_PORT),
        default_dns=values.get("WG_DEFAULT_DNS") or DEFAULT_DNS,
        allowed_ips=values.get("WG_ALLOWED_IPS") or DEFAULT_ALLOWED_IPS,
        default_address=values.get("WG_DEFAULT_ADDRESS") or DEFAULT_ADDRESS,
        mtu=_parse_int(values, "WG_MTU", DEFAULT_MTU),
        persistent_keepalive=_parse_int(values, "WG_PERSISTENT_KEEPALIVE", DEFAULT_KEEPALIVE),
        image=values.get("WG_EASY_IMAGE") or DEFAULT_IMAGE,
    )


def update_env(path, updates: dict, quoted=()):
    """Set keys in the .env file, replacing existing lines or appending new ones.

    Unrelated lines and comments are left untouched.

    Args:
        path: Path to the .env file (created if missing)
        updates: Mapping of key -> value
        quoted: Keys whose values are written in single quotes so compose
            does not expand '$' inside them
    """
    for key, value in updates.items():
        mode = "always" if key in quoted else "never"
        set_key(str(path), key, str(value), quote_mode=mode)
        log.debug("Set %s in %s", key, path)
    secure_file(path)


def remove_env_keys(path, keys):
    for key in keys:
        if key in read_env(path):
            unset_key(str(path), key)
    if os.path.exists(path):
        secure_file(path)


def write_env_template(path, host: str, password: str) -> bool:
    """Create the .env file from the template if it is absent.

    Returns:
        True if the file was created, False if it already existed
    """
    if os.path.exists(path):
        return False
    with open(path, "w", encoding="utf-8") as f:
        f.write(ENV_TEMPLATE.format(host=host, password=password))
    secure_file(path)
    log.info(".env file created at %s", path)
    return True


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Random alphanumeric password built from 32 bytes of urandom."""
    raw = base64.b64encode(os.urandom(32)).decode("ascii")
    cleaned = raw.translate(str.maketrans("", "", "=+/"))
    return cleaned[:length]


def hash_password(pw: str) -> str:
    return bcrypt.hashpw(pw.encode(), bcrypt.gensalt()).decode()


def verify_password(pw: str, stored_hash: str) -> bool:
    try:
        return bcrypt.checkpw(pw.encode(), stored_hash.encode())
    except ValueError:
        # not a bcrypt hash
        return False


def set_password(path, password: str, hashed: bool = False):
    """Store the web UI password.

    Plain mode writes PASSWORD. Hashed mode writes a bcrypt PASSWORD_HASH,
    clears PASSWORD and switches WG_EASY_IMAGE to a release that reads the
    hash (newer wg-easy images refuse a plain PASSWORD). A stored hash that
    already matches ``password`` is kept.
    """
    if hashed:
        updates = {"WG_EASY_IMAGE": HASHED_IMAGE}
        current = read_env(path).get("PASSWORD_HASH", "")
        if current and verify_password(password, current):
            log.info("PASSWORD_HASH already matches, keeping it")
        else:
            updates["PASSWORD_HASH"] = hash_password(password)
        update_env(path, updates, quoted=("PASSWORD_HASH",))
        remove_env_keys(path, ("PASSWORD",))
    else:
        update_env(path, {"PASSWORD": password})
        stale = ["PASSWORD_HASH"]
        if read_env(path).get("WG_EASY_IMAGE") == HASHED_IMAGE:
            stale.append("WG_EASY_IMAGE")
        remove_env_keys(path, stale)
