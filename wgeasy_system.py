#!/usr/bin/env python3
"""Host preparation: OS detection, Docker install, forwarding and firewall."""

import ipaddress
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

import httpx

from wgeasy_host import command_exists

log = logging.getLogger("wgeasy.system")

OS_RELEASE = "/etc/os-release"
SYSCTL_CONF = "/etc/sysctl.conf"
FORWARD_SETTINGS = ("net.ipv4.ip_forward=1", "net.ipv4.conf.all.src_valid_mark=1")
PUBLIC_IP_URLS = ("https://ifconfig.me/ip", "https://icanhazip.com", "https://ipinfo.io/ip")
APT_KEYRING_DIR = "/etc/apt/keyrings"
DOCKER_KEYRING = "/etc/apt/keyrings/docker.gpg"
DOCKER_APT_SOURCE = "/etc/apt/sources.list.d/docker.list"
DOCKER_YUM_REPO = "https://download.docker.com/linux/centos/docker-ce.repo"
DOCKER_PACKAGES = [
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
]
APT_FAMILY = ("ubuntu", "debian")
YUM_FAMILY = ("centos", "rhel", "fedora")


class PreconditionError(Exception):
    """The host cannot run the installer as-is."""

    def __init__(self, message: str, hint: str = ""):
        super().__init__(message)
        self.hint = hint


@dataclass
class OSInfo:
    id: str
    version_id: str = ""
    codename: str = ""


def ensure_root():
    """Raise if not root on POSIX systems (docker, sysctl and firewall need it).

    Raises:
        PreconditionError: If not running as root user
    """
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        raise PreconditionError(
            "This tool must be run as root", hint="Re-run the command with sudo"
        )


def read_os_release(path: str = OS_RELEASE) -> dict:
    data = {}
    p = Path(path)
    if not p.exists():
        return data
    for line in p.read_text(errors="ignore").splitlines():
        if "=" in line and not line.lstrip().startswith("#"):
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip().strip('"')
    return data


def detect_os(path: str = OS_RELEASE) -> OSInfo:
    """Identify the distribution from os-release.

    Raises:
        PreconditionError: If the os-release file is missing or has no ID
    """
    data = read_os_release(path)
    if not data.get("ID"):
        raise PreconditionError(
            f"Cannot detect OS. {path} not found.",
            hint="Run on Ubuntu, Debian, CentOS, RHEL or Fedora",
        )
    info = OSInfo(
        id=data["ID"].lower(),
        version_id=data.get("VERSION_ID", ""),
        codename=data.get("VERSION_CODENAME", ""),
    )
    log.info("Detected OS: %s %s", info.id, info.version_id)
    return info


def install_docker(os_info: OSInfo) -> bool:
    """Install Docker Engine and the compose plugin if docker is missing.

    Args:
        os_info: Result of detect_os()

    Returns:
        True if Docker was installed, False if it was already present

    Raises:
        PreconditionError: On unsupported distributions or a failed key download
        subprocess.CalledProcessError: If a package manager step fails
    """
    if command_exists("docker"):
        log.info("Docker is already installed")
        subprocess.run(["docker", "--version"], check=False)
        return False

    log.info("Installing Docker...")
    if os_info.id in APT_FAMILY:
        _install_docker_apt(os_info)
    elif os_info.id in YUM_FAMILY:
        _install_docker_yum()
    else:
        raise PreconditionError(
            f"Unsupported OS: {os_info.id}",
            hint="Install Docker with the compose plugin manually, then re-run",
        )
    log.info("Docker installed successfully")
    return True


def _install_docker_apt(os_info: OSInfo):
    env = os.environ.copy()
    env["DEBIAN_FRONTEND"] = "noninteractive"
    subprocess.run(["apt-get", "update"], check=True, env=env)
    subprocess.run(
        ["apt-get", "install", "-y", "ca-certificates", "curl", "gnupg", "lsb-release"],
        check=True,
        env=env,
    )

    os.makedirs(APT_KEYRING_DIR, mode=0o755, exist_ok=True)
    key_url = f"https://download.docker.com/linux/{os_info.id}/gpg"
    try:
        response = httpx.get(key_url, timeout=30, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise PreconditionError(
            f"Could not download Docker GPG key: {e}",
            hint="Check network access to download.docker.com and re-run",
        )
    subprocess.run(
        ["gpg", "--dearmor", "--yes", "-o", DOCKER_KEYRING],
        input=response.content,
        check=True,
    )
    os.chmod(DOCKER_KEYRING, 0o644)

    arch = subprocess.run(
        ["dpkg", "--print-architecture"], capture_output=True, text=True, check=True
    ).stdout.strip()
    codename = os_info.codename
    if not codename:
        codename = subprocess.run(
            ["lsb_release", "-cs"], capture_output=True, text=True, check=True
        ).stdout.strip()

    with open(DOCKER_APT_SOURCE, "w") as f:
        f.write(
            f"deb [arch={arch} signed-by={DOCKER_KEYRING}] "
            f"https://download.docker.com/linux/{os_info.id} {codename} stable\n"
        )

    subprocess.run(["apt-get", "update"], check=True, env=env)
    subprocess.run(["apt-get", "install", "-y"] + DOCKER_PACKAGES, check=True, env=env)


def _install_docker_yum():
    subprocess.run(["yum", "install", "-y", "yum-utils"], check=True)
    subprocess.run(["yum-config-manager", "--add-repo", DOCKER_YUM_REPO], check=True)
    subprocess.run(["yum", "install", "-y"] + DOCKER_PACKAGES, check=True)
    subprocess.run(["systemctl", "start", "docker"], check=True)
    subprocess.run(["systemctl", "enable", "docker"], check=True)


def is_ip(s: str) -> bool:
    try:
        ipaddress.ip_address(s)
        return True
    except ValueError:
        return False


def get_public_ip() -> str:
    """Ask a few public echo services for this host's address.

    Returns:
        The first valid address returned, or "" if none answered
    """
    for url in PUBLIC_IP_URLS:
        try:
            response = httpx.get(url, timeout=5, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.debug("Public IP lookup via %s failed: %s", url, e)
            continue
        candidate = response.text.strip()
        if is_ip(candidate):
            return candidate
    return ""


def get_local_ip() -> str:
    """Source address of the default route, or "" if it cannot be read."""
    try:
        result = subprocess.run(
            ["ip", "route", "get", "8.8.8.8"],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        return ""
    parts = result.stdout.split()
    if "src" in parts:
        idx = parts.index("src")
        if idx + 1 < len(parts) and is_ip(parts[idx + 1]):
            return parts[idx + 1]
    return ""


def get_server_ip() -> str:
    return get_public_ip() or get_local_ip()


def enable_ip_forward(sysctl_conf: str = SYSCTL_CONF):
    """Turn on IPv4 forwarding now and persist it in sysctl.conf."""
    log.info("Enabling IP forwarding...")
    for setting in FORWARD_SETTINGS:
        subprocess.run(["sysctl", "-w", setting], check=True, stdout=subprocess.DEVNULL)

    try:
        existing = Path(sysctl_conf).read_text()
    except FileNotFoundError:
        existing = ""
    missing = [s for s in FORWARD_SETTINGS if s not in existing.splitlines()]
    if missing:
        with open(sysctl_conf, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            for setting in missing:
                f.write(setting + "\n")

    result = subprocess.run(
        ["sysctl", "-p", sysctl_conf], stdout=subprocess.DEVNULL, stderr=subprocess.PIPE
    )
    if result.returncode != 0:
        log.warning("sysctl -p reported errors: %s", result.stderr.decode(errors="replace").strip())
    log.info("IP forwarding enabled")


def _ufw_active() -> bool:
    result = subprocess.run(["ufw", "status"], capture_output=True, text=True)
    return "Status: active" in result.stdout


def configure_firewall(wg_port: int, ui_port: int) -> str:
    """Open the VPN and UI ports in ufw or firewalld.

    Returns:
        "ufw", "firewalld" or "none"
    """
    log.info("Configuring firewall...")
    if command_exists("ufw") and _ufw_active():
        subprocess.run(
            ["ufw", "allow", f"{wg_port}/udp", "comment", "WireGuard VPN"], check=True
        )
        subprocess.run(
            ["ufw", "allow", f"{ui_port}/tcp", "comment", "WireGuard Web UI"], check=True
        )
        log.info("UFW firewall rules added")
        return "ufw"
    if command_exists("firewall-cmd"):
        subprocess.run(["firewall-cmd", "--permanent", f"--add-port={wg_port}/udp"], check=True)
        subprocess.run(["firewall-cmd", "--permanent", f"--add-port={ui_port}/tcp"], check=True)
        subprocess.run(["firewall-cmd", "--reload"], check=True)
        log.info("Firewalld rules added")
        return "firewalld"
    log.warning(
        "No firewall detected (UFW or firewalld). Make sure ports %s/udp and %s/tcp are open.",
        wg_port,
        ui_port,
    )
    return "none"


def firewall_hint(wg_port: int, ui_port: int) -> list[str]:
    return [f"sudo ufw allow {wg_port}/udp", f"sudo ufw allow {ui_port}/tcp"]
