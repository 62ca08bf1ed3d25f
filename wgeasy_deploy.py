#!/usr/bin/env python3
"""docker compose handling for the wg-easy workload."""

import logging
import os
import subprocess
import time
from pathlib import Path

import httpx

from wgeasy_host import wait_until

log = logging.getLogger("wgeasy.deploy")

COMPOSE_FILE = "docker-compose.yml"
CONTAINER_NAME = "wg-easy"
DATA_DIR = "wg-easy"
START_TIMEOUT = 60.0

COMPOSE_TEMPLATE = """services:
  wg-easy:
    image: ${WG_EASY_IMAGE:-ghcr.io/wg-easy/wg-easy:13}
    container_name: wg-easy
    environment:
      - WG_HOST=${WG_HOST}
      - PASSWORD=${PASSWORD:-}
      - PASSWORD_HASH=${PASSWORD_HASH:-}
      - WG_PORT=${WG_PORT:-51820}
      - WG_DEFAULT_DNS=${WG_DEFAULT_DNS:-1.1.1.1, 1.0.0.1}
      - WG_ALLOWED_IPS=${WG_ALLOWED_IPS:-0.0.0.0/0, ::/0}
      - WG_PERSISTENT_KEEPALIVE=${WG_PERSISTENT_KEEPALIVE:-25}
      - WG_DEFAULT_ADDRESS=${WG_DEFAULT_ADDRESS:-10.8.0.x}
      - WG_MTU=${WG_MTU:-1420}
    volumes:
      - ./wg-easy:/etc/wireguard
    ports:
      - "${WG_PORT:-51820}:51820/udp"
      - "${WG_UI_PORT:-51821}:51821/tcp"
    restart: unless-stopped
    cap_add:
      - NET_ADMIN
      - SYS_MODULE
    sysctls:
      - net.ipv4.conf.all.src_valid_mark=1
      - net.ipv4.ip_forward=1
"""


def write_compose_file(directory) -> bool:
    """Write docker-compose.yml into ``directory`` unless it already exists.

    Returns:
        True if the file was written, False if an existing one was kept
    """
    path = Path(directory) / COMPOSE_FILE
    if path.exists():
        log.info("%s already exists, skipping...", COMPOSE_FILE)
        return False
    path.write_text(COMPOSE_TEMPLATE)
    os.makedirs(Path(directory) / DATA_DIR, exist_ok=True)
    log.info("%s created successfully", COMPOSE_FILE)
    return True


def compose_file_exists(directory) -> bool:
    return (Path(directory) / COMPOSE_FILE).exists()


def _compose(directory, *args, check: bool = True, capture: bool = False):
    cmd = ["docker", "compose", *args]
    log.debug("Running %s in %s", " ".join(cmd), directory)
    if capture:
        return subprocess.run(cmd, cwd=str(directory), check=check, capture_output=True, text=True)
    return subprocess.run(cmd, cwd=str(directory), check=check)


def compose_up(directory):
    """Start the stack in the background.

    Raises:
        subprocess.CalledProcessError: If docker compose fails
    """
    log.info("Starting WireGuard with wg-easy panel...")
    _compose(directory, "up", "-d")


def compose_restart(directory):
    _compose(directory, "restart")


def compose_logs(directory, follow: bool = False, tail: int | None = None):
    args = ["logs"]
    if follow:
        args.append("-f")
    if tail:
        args += ["--tail", str(tail)]
    _compose(directory, *args, check=False)


def compose_ps(directory):
    _compose(directory, "ps", check=False)


def container_running(name: str = CONTAINER_NAME) -> bool:
    try:
        result = subprocess.run(
            ["docker", "ps", "--filter", f"name=^{name}$", "--format", "{{.Names}}"],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        return False
    return name in result.stdout.split()


def ui_responding(ui_port: int, host: str = "127.0.0.1") -> bool:
    """True if anything answers HTTP on the web UI port."""
    try:
        httpx.get(f"http://{host}:{ui_port}/", timeout=2)
        return True
    except httpx.HTTPError:
        return False


def wait_for_workload(
    ui_port: int,
    name: str = CONTAINER_NAME,
    timeout: float = START_TIMEOUT,
    sleep=time.sleep,
) -> bool:
    """Wait for the container to run and its web UI to answer.

    Returns:
        True if the container is running (a silent UI only logs a warning),
        False if the container never came up
    """
    ready = wait_until(
        lambda: container_running(name) and ui_responding(ui_port),
        timeout=timeout,
        initial_delay=1.0,
        max_delay=5.0,
        sleep=sleep,
    )
    if ready:
        log.info("WireGuard with wg-easy is running!")
        return True
    if container_running(name):
        log.warning("Container is running but the web UI on port %s did not answer yet", ui_port)
        return True
    log.error("Failed to start %s container", name)
    return False
