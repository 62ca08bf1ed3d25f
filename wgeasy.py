#!/usr/bin/env python3
"""wgeasy - install and run WireGuard with the wg-easy web panel.

Installs Docker when missing, frees the VPN/UI ports from leftover WireGuard
setups, writes .env and docker-compose.yml, opens the firewall and starts the
wg-easy container.
"""

import logging
import os
import subprocess
import sys
from pathlib import Path

from wgeasy_deploy import (
    CONTAINER_NAME,
    compose_file_exists,
    compose_logs,
    compose_ps,
    compose_restart,
    compose_up,
    container_running,
    wait_for_workload,
    write_compose_file,
)
from wgeasy_env import (
    ConfigError,
    env_path,
    generate_password,
    load_settings,
    set_password,
    update_env,
    write_env_template,
)
from wgeasy_host import HostSystem, Transport
from wgeasy_reconcile import (
    AutoConfirm,
    DecisionPolicy,
    Interactive,
    PortExhaustion,
    Ports,
    ReconcileResult,
    Reconciler,
)
from wgeasy_system import (
    PreconditionError,
    configure_firewall,
    detect_os,
    enable_ip_forward,
    ensure_root,
    firewall_hint,
    get_server_ip,
    install_docker,
    is_ip,
)

log = logging.getLogger("wgeasy")

FIX_HINT = "To fix port conflicts, run: sudo wgeasy fix-ports"
RULE = "=" * 40

VALUE_FLAGS = {
    "--host": "host",
    "--dir": "dir",
    "--port": "port",
    "--ui-port": "ui_port",
}
BOOL_FLAGS = {
    "-y": "yes",
    "--yes": "yes",
    "--auto-shift": "auto_shift",
    "--dry-run": "dry_run",
    "--hash-password": "hash_password",
    "--no-firewall": "no_firewall",
    "--start": "start",
    "--no-start": "no_start",
    "-f": "follow",
    "--follow": "follow",
}


def setup_logging():
    debug = os.getenv("WGEASY_DEBUG", "0") in ("1", "true", "True")
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )


def parse_options(args: list[str]) -> tuple[dict, list[str]]:
    """Split command arguments into known flags and positional values.

    Raises:
        ValueError: On an unknown flag or a flag missing its value
    """
    opts = {name: None for name in VALUE_FLAGS.values()}
    opts.update({name: False for name in BOOL_FLAGS.values()})
    opts["dir"] = os.getcwd()
    positional = []
    i = 0
    while i < len(args):
        a = args[i]
        if a in VALUE_FLAGS:
            if i + 1 >= len(args):
                raise ValueError(f"Missing value for {a}")
            opts[VALUE_FLAGS[a]] = args[i + 1]
            i += 2
            continue
        if a in BOOL_FLAGS:
            opts[BOOL_FLAGS[a]] = True
            i += 1
            continue
        if a.startswith("-"):
            raise ValueError(f"Unknown option: {a}")
        positional.append(a)
        i += 1
    for key in ("port", "ui_port"):
        if opts[key] is not None:
            opts[key] = parse_port(opts[key])
    return opts, positional


def parse_port(value) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid port: {value}")
    if not 1 <= port <= 65535:
        raise ValueError(f"Port out of range: {port}")
    return port


def make_policy(opts: dict) -> DecisionPolicy:
    if opts.get("yes"):
        return AutoConfirm()
    return Interactive()


def resolve_server_ip(opts: dict, policy: DecisionPolicy, fallback: str = "") -> str:
    """Pick the address clients will connect to.

    Raises:
        PreconditionError: If no address is known and none can be asked for
    """
    if opts.get("host"):
        return opts["host"]
    server_ip = get_server_ip() or fallback
    if not server_ip:
        log.warning("Could not detect server IP automatically")
        server_ip = policy.ask("Please enter your server's public IP address")
    else:
        log.info("Detected server IP: %s", server_ip)
        if not policy.confirm("Is this correct?", True):
            server_ip = policy.ask("Please enter your server's public IP address", server_ip)
    if not server_ip:
        raise PreconditionError(
            "Server address is unknown", hint="Pass it explicitly: sudo wgeasy install --host ADDR"
        )
    if not is_ip(server_ip):
        log.info("Using hostname %s as WG_HOST", server_ip)
    return server_ip


def report_reconcile(result: ReconcileResult):
    for transport, old, new in result.changes:
        log.info("%s port changed: %s -> %s", transport.value.upper(), old, new)
    for failure in result.failures:
        log.warning("Could not %s %s: %s", failure.action, failure.target, failure.detail)
    for port, transport in sorted(result.overridden):
        log.warning("Port %s/%s is still in use (continuing on request)", port, transport.value)
    for probe in result.blocked:
        log.error("Port %s is still blocked", probe.describe())


def verify_ports(reconciler: Reconciler, result: ReconcileResult) -> list[str]:
    """Re-scan the effective ports right before starting the container."""
    busy = []
    for port, transport in ((result.ports.vpn, Transport.UDP), (result.ports.ui, Transport.TCP)):
        if (port, transport) in result.overridden:
            continue
        if reconciler.scan_port(port, transport):
            busy.append(f"{port}/{transport.value}")
    return busy


def print_access_info(server_ip: str, ports: Ports, password: str, directory: Path):
    print("")
    print(RULE)
    print("Installation Complete!")
    print(RULE)
    print("")
    print("Web UI Access:")
    print(f"  URL: http://{server_ip}:{ports.ui}")
    print(f"  Password: {password}")
    print("")
    print(f"WireGuard UDP Port: {ports.vpn}")
    print("")
    print("Useful Commands:")
    print("  View logs:     docker compose logs -f")
    print("  Restart:       docker compose restart")
    print("  Stop:          docker compose down")
    print("  Start:         docker compose up -d")
    print("")
    print(f"Configuration file: {env_path(directory)}")
    print(f"WireGuard data:    {directory / 'wg-easy'}/")
    print("")
    print(RULE)
    print("")
    print("IMPORTANT SECURITY NOTES:")
    print("1. Save your password securely!")
    print("2. Consider using a reverse proxy with HTTPS for production")
    print("3. Change the default password in the .env file if needed")
    print("4. Make sure your firewall is properly configured")
    print("")


def install(opts: dict) -> int:
    """Full installation: Docker, ports, config files, firewall, container."""
    ensure_root()
    directory = Path(opts["dir"]).resolve()
    directory.mkdir(parents=True, exist_ok=True)
    dry_run = opts["dry_run"]

    print(RULE)
    print("WireGuard with wg-easy Auto-Installer")
    print(RULE)
    print("")

    os_info = detect_os()
    if dry_run:
        log.info("[dry-run] skipping Docker installation check")
    else:
        install_docker(os_info)

    path = env_path(directory)
    settings = load_settings(path)
    policy = make_policy(opts)
    reconciler = Reconciler(
        HostSystem(dry_run=dry_run),
        policy,
        auto_shift=opts["auto_shift"],
        dry_run=dry_run,
    )

    log.info("Checking for port conflicts and existing installations...")
    desired = Ports(opts["port"] or settings.wg_port, opts["ui_port"] or settings.wg_ui_port)
    result = reconciler.reconcile(desired)
    report_reconcile(result)
    if not result.ok:
        log.error("Conflicts detected that prevent installation!")
        log.info(FIX_HINT)
        return 1
    ports = result.ports

    server_ip = resolve_server_ip(opts, policy, fallback=settings.wg_host)

    if settings.password:
        log.info("Password already exists in .env file")
        password = settings.password
    elif settings.password_hash and not opts["hash_password"]:
        log.info("Password hash already exists in .env file")
        password = None
    else:
        password = generate_password()
        log.info("Generated secure password for web UI")

    if dry_run:
        log.info("[dry-run] would write %s with WG_HOST=%s WG_PORT=%s WG_UI_PORT=%s",
                 path, server_ip, ports.vpn, ports.ui)
        log.info("[dry-run] would write docker-compose.yml, enable forwarding, "
                 "open the firewall and start the container")
        return 0

    log.info("Creating .env configuration file...")
    plain = password if password and not opts["hash_password"] else ""
    created = write_env_template(path, server_ip, plain)
    if not created:
        update_env(path, {"WG_HOST": server_ip})
    if opts["hash_password"]:
        set_password(path, password, hashed=True)
    elif plain and not created and not settings.password:
        set_password(path, plain)
    if ports != (settings.wg_port, settings.wg_ui_port):
        update_env(path, {"WG_PORT": ports.vpn, "WG_UI_PORT": ports.ui})

    write_compose_file(directory)
    enable_ip_forward()
    if opts["no_firewall"]:
        log.info("Skipping firewall configuration")
    else:
        configure_firewall(ports.vpn, ports.ui)

    busy = verify_ports(reconciler, result)
    if busy:
        log.error("Port(s) %s became busy before start", ", ".join(busy))
        log.info(FIX_HINT)
        return 1

    compose_up(directory)
    if not wait_for_workload(ports.ui):
        print("")
        log.info("Showing container logs:")
        compose_logs(directory)
        print("")
        log.error("If you see a port binding error, run: sudo wgeasy fix-ports")
        return 1

    print_access_info(server_ip, ports, password or "(unchanged, stored as PASSWORD_HASH)", directory)
    return 0


def fix_ports(opts: dict) -> int:
    """Clean up port conflicts, then start, move ports, or exit."""
    ensure_root()
    directory = Path(opts["dir"]).resolve()
    path = env_path(directory)
    settings = load_settings(path)
    policy = make_policy(opts)
    reconciler = Reconciler(
        HostSystem(dry_run=opts["dry_run"]),
        policy,
        auto_shift=opts["auto_shift"],
        dry_run=opts["dry_run"],
    )
    ports = Ports(opts["port"] or settings.wg_port, opts["ui_port"] or settings.wg_ui_port)

    print(RULE)
    print("WireGuard Port Conflict Fix")
    print(RULE)
    print("")

    for port, transport in ((ports.vpn, Transport.UDP), (ports.ui, Transport.TCP)):
        probe = reconciler.host.query_port(port, transport)
        if probe.in_use:
            log.warning("Port %s is in use", probe.describe())
        else:
            log.info("Port %s/%s appears to be free now", port, transport.value)

    conflicts = reconciler.enumerate_conflicts()
    if conflicts:
        held = reconciler.held_by_resources(ports, conflicts)
        actions = reconciler.remediate(conflicts)
        for failure in (a for a in actions if not a.ok and not a.skipped):
            log.warning("Could not %s %s: %s", failure.action, failure.target, failure.detail)
        if any(a.ok and not a.skipped for a in actions):
            reconciler.wait_for_release(held)
    else:
        log.info("No existing wg-easy containers, WireGuard services or interfaces found")

    still_busy = [
        (port, transport)
        for port, transport in ((ports.vpn, Transport.UDP), (ports.ui, Transport.TCP))
        if reconciler.scan_port(port, transport)
    ]

    if opts["auto_shift"] and still_busy:
        return save_ports(directory, opts, policy, shift_ports(reconciler, ports, still_busy))

    print("")
    choice = policy.choose(
        "Port Configuration Options",
        {
            "1": f"Try to start wg-easy on ports {ports.vpn}/udp and {ports.ui}/tcp",
            "2": "Configure wg-easy to use different ports",
            "3": "Exit and investigate manually",
        },
        default="2" if still_busy else "1",
        cancel="3",
    )

    if choice == "1":
        for port, transport in still_busy:
            log.warning("Port %s/%s is still in use, start may fail", port, transport.value)
        return start_workload(directory, opts, policy, ports)
    if choice == "2":
        return move_ports(directory, opts, policy, reconciler, ports, still_busy)
    if choice == "3":
        print_debug_commands(ports)
        return 0
    log.error("Invalid choice")
    return 1


def shift_ports(reconciler: Reconciler, ports: Ports, still_busy) -> Ports:
    """Move every busy port to the next free one above it.

    Raises:
        PortExhaustion: If no free port is found for a busy one
    """
    busy = set(still_busy)
    shifted = []
    for port, transport in ((ports.vpn, Transport.UDP), (ports.ui, Transport.TCP)):
        if (port, transport) in busy:
            new_port = reconciler.find_next_free(port + 1, transport)
            log.info("Port %s/%s is busy, using %s/%s", port, transport.value, new_port, transport.value)
            shifted.append(new_port)
        else:
            shifted.append(port)
    return Ports(*shifted)


def ask_port(policy, reconciler, label: str, transport: Transport, suggestion: int) -> int:
    """Ask for a port until it is free or the operator accepts that it is busy."""
    while True:
        port = parse_port(policy.ask(f"Enter new {label} port", str(suggestion)))
        if not reconciler.scan_port(port, transport):
            return port
        log.warning("Port %s/%s is in use", port, transport.value)
        if policy.confirm(f"Continue with port {port}/{transport.value} anyway? This might fail.", False):
            return port
        if port == suggestion:
            suggestion = reconciler.find_next_free(port + 1, transport)


def move_ports(directory, opts, policy, reconciler, ports, still_busy) -> int:
    """Pick new ports, store them in .env and optionally start the stack."""
    busy = set(still_busy)
    new_ports = []
    for port, transport, label in (
        (ports.vpn, Transport.UDP, "WireGuard"),
        (ports.ui, Transport.TCP, "Web UI"),
    ):
        start = port + 1 if (port, transport) in busy else port
        suggestion = reconciler.find_next_free(start, transport)
        new_ports.append(ask_port(policy, reconciler, label, transport, suggestion))
    return save_ports(directory, opts, policy, Ports(*new_ports))


def save_ports(directory, opts, policy, new: Ports) -> int:
    path = env_path(directory)
    if path.exists():
        if opts["dry_run"]:
            log.info("[dry-run] would set WG_PORT=%s WG_UI_PORT=%s in %s", new.vpn, new.ui, path)
        else:
            update_env(path, {"WG_PORT": new.vpn, "WG_UI_PORT": new.ui})
            log.info("Configuration updated")
    else:
        log.warning(".env file not found. Please run 'wgeasy install' first or create .env manually")
        print("Add these lines to your .env file:")
        print(f"WG_PORT={new.vpn}")
        print(f"WG_UI_PORT={new.ui}")

    log.info("New WireGuard port: %s/udp", new.vpn)
    log.info("New Web UI port: %s/tcp", new.ui)
    print("")
    log.warning("Remember to update your firewall rules for the new ports:")
    for line in firewall_hint(new.vpn, new.ui):
        print(f"  {line}")
    print("")
    return start_workload(directory, opts, policy, new)


def start_workload(directory: Path, opts: dict, policy: DecisionPolicy, ports: Ports) -> int:
    if opts["no_start"]:
        return 0
    if not opts["start"] and not policy.confirm("Start wg-easy now?", True):
        return 0
    if not compose_file_exists(directory):
        raise PreconditionError(
            "docker-compose.yml not found", hint="Run 'sudo wgeasy install' first"
        )
    if opts["dry_run"]:
        log.info("[dry-run] would run: docker compose up -d")
        return 0
    compose_up(directory)
    if not wait_for_workload(ports.ui):
        compose_logs(directory)
        log.info(FIX_HINT)
        return 1
    log.info("Done! Check status with: docker compose logs -f")
    return 0


def print_debug_commands(ports: Ports):
    log.info("Exiting. Here are some useful debugging commands:")
    print(f"  - Check port usage: sudo ss -tulpn | grep {ports.vpn}")
    print("  - Check Docker containers: docker ps -a")
    print("  - Check WireGuard interfaces: sudo wg show")
    print("  - Check system services: systemctl list-units | grep wg")


def status(opts: dict) -> int:
    directory = Path(opts["dir"]).resolve()
    settings = load_settings(env_path(directory))
    host = HostSystem()
    print(f"Docker service: {'active' if host.service_active('docker') else 'inactive'}")
    print(f"Container {CONTAINER_NAME}: {'running' if container_running() else 'not running'}")
    for port, transport in ((settings.wg_port, Transport.UDP), (settings.wg_ui_port, Transport.TCP)):
        probe = host.query_port(port, transport)
        print(f"Port {probe.describe()}: {probe.state.value}")
    if compose_file_exists(directory):
        compose_ps(directory)
    return 0


def logs(opts: dict) -> int:
    directory = Path(opts["dir"]).resolve()
    if not compose_file_exists(directory):
        raise PreconditionError(
            "docker-compose.yml not found", hint="Run 'sudo wgeasy install' first"
        )
    compose_logs(directory, follow=opts["follow"])
    return 0


def restart(opts: dict) -> int:
    ensure_root()
    directory = Path(opts["dir"]).resolve()
    if not compose_file_exists(directory):
        raise PreconditionError(
            "docker-compose.yml not found", hint="Run 'sudo wgeasy install' first"
        )
    settings = load_settings(env_path(directory))
    compose_restart(directory)
    return 0 if wait_for_workload(settings.wg_ui_port) else 1


def reset_password(opts: dict, new_password: str | None = None) -> int:
    """Replace the web UI password and recreate the container if it runs."""
    ensure_root()
    directory = Path(opts["dir"]).resolve()
    path = env_path(directory)
    if not path.exists():
        raise PreconditionError(f"{path} not found", hint="Run 'sudo wgeasy install' first")

    password = new_password or generate_password()
    set_password(path, password, hashed=opts["hash_password"])
    print(f"New web UI password: {password}")

    if container_running() and compose_file_exists(directory):
        log.info("Recreating the container with the new password...")
        compose_up(directory)
    return 0


def help():
    """Display usage for the wgeasy CLI."""
    txt = """
wgeasy - WireGuard + wg-easy installer

Usage:
  wgeasy help|--help|-h
      Show this help.

  wgeasy install [--host ADDR] [--dir DIR] [-y|--yes] [--auto-shift]
                 [--port N] [--ui-port N] [--dry-run] [--hash-password] [--no-firewall]
      Install Docker, resolve port conflicts, write .env and docker-compose.yml,
      open the firewall and start wg-easy.

  wgeasy fix-ports [--dir DIR] [-y|--yes] [--auto-shift] [--dry-run]
                   [--port N] [--ui-port N] [--start|--no-start]
      Clean up leftover WireGuard containers, services and interfaces, then
      start on the configured ports or move to free ones.

  wgeasy status [--dir DIR]
      Show container and port state.

  wgeasy logs [--dir DIR] [-f]
      Show container logs.

  wgeasy restart [--dir DIR]
      Restart the wg-easy container and wait until it is up.

  wgeasy password [NEW_PASSWORD] [--dir DIR] [--hash-password]
      Set a new web UI password (random if omitted).

Notes:
  - Defaults: VPN 51820/udp, web UI 51821/tcp.
  - --yes answers every question with yes; --auto-shift moves busy ports
    to the next free one without asking.
  - Set WGEASY_DEBUG=1 for verbose output.
""".strip()
    print(txt)


def main(argv: list[str] | None = None) -> int:
    """Entry point. Returns the process exit status."""
    argv = sys.argv[1:] if argv is None else argv
    setup_logging()

    if not argv or argv[0] in ("help", "--help", "-h"):
        help()
        return 0

    command, args = argv[0], argv[1:]
    try:
        opts, positional = parse_options(args)
        if command == "install":
            return install(opts)
        if command in ("fix-ports", "fix"):
            return fix_ports(opts)
        if command == "status":
            return status(opts)
        if command == "logs":
            return logs(opts)
        if command == "restart":
            return restart(opts)
        if command == "password":
            return reset_password(opts, positional[0] if positional else None)
        print(f"Unknown command: {command}")
        help()
        return 1
    except ValueError as e:
        log.error("%s", e)
        print("Run 'wgeasy help' for usage.")
        return 1
    except PreconditionError as e:
        log.error("%s", e)
        if e.hint:
            log.info(e.hint)
        return 1
    except PortExhaustion as e:
        log.error("%s", e)
        log.info("Free a port in that range or pick another one: sudo wgeasy fix-ports --port N")
        return 1
    except ConfigError as e:
        log.error("%s", e)
        log.info("Fix the value in .env and re-run")
        return 1
    except subprocess.CalledProcessError as e:
        cmd = " ".join(e.cmd) if isinstance(e.cmd, (list, tuple)) else str(e.cmd)
        log.error("Command failed (exit %s): %s", e.returncode, cmd)
        log.info("Fix the error above and re-run the same command")
        return 1
    except KeyboardInterrupt:
        print("")
        log.info("Cancelled")
        return 130


if __name__ == "__main__":
    sys.exit(main())
