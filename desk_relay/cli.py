#!/usr/bin/env python3
"""
Desk Relay CLI - Command line interface for starting/stopping the server.
"""

import argparse
import logging
import os
import signal
import sys
from pathlib import Path

# PID file location
PID_FILE = Path("/tmp/desk-relay.pid")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def get_pid() -> int | None:
    """Get PID from file if exists."""
    if PID_FILE.exists():
        try:
            pid = int(PID_FILE.read_text().strip())
            # Check if process is running
            os.kill(pid, 0)
            return pid
        except (ValueError, OSError):
            PID_FILE.unlink(missing_ok=True)
    return None


def write_pid() -> None:
    """Write current PID to file."""
    PID_FILE.write_text(str(os.getpid()))


def remove_pid() -> None:
    """Remove PID file."""
    PID_FILE.unlink(missing_ok=True)


def setup_logging(level: str) -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def apply_overrides(config, args) -> None:
    """Copy CLI flags onto the loaded config."""
    if args.port:
        config.set("server", "port", args.port)
    if args.fps:
        config.set("stream", "fps", args.fps)
    if args.no_stream:
        config.set("stream", "enabled", False)
    if args.quality:
        config.set("capture", "quality", args.quality)
    if args.scale:
        config.set("capture", "scale", args.scale)
    if args.log_level:
        config.set("logging", "level", args.log_level)


def cmd_start(args) -> int:
    """Start the server."""
    # Check if already running
    existing_pid = get_pid()
    if existing_pid:
        print(f"❌ Desk Relay is already running (PID: {existing_pid})")
        print(f"   Run 'desk-relay stop' first")
        return 1

    # Import here to avoid loading when not needed
    from .config import reload_config
    from .server import run_server

    config = reload_config(Path(args.config) if args.config else None)
    apply_overrides(config, args)
    setup_logging(config.log_level)

    write_pid()

    try:
        run_server(config)
    except KeyboardInterrupt:
        pass
    finally:
        remove_pid()

    return 0


def cmd_stop(args) -> int:
    """Stop the server."""
    pid = get_pid()

    if not pid:
        print("ℹ️  Desk Relay is not running")
        return 0

    try:
        os.kill(pid, signal.SIGTERM)
        print(f"✅ Stopped Desk Relay (PID: {pid})")
        remove_pid()
        return 0
    except OSError as e:
        print(f"❌ Failed to stop: {e}")
        remove_pid()
        return 1


def cmd_status(args) -> int:
    """Check server status."""
    pid = get_pid()

    if pid:
        print(f"✅ Desk Relay is running (PID: {pid})")

        from .config import get_config
        config = get_config()
        print(f"   Login API: http://{config.host}:{config.port}/api/auth")
        print(f"   Broker:    ws://{config.host}:{config.ws_port}")

        return 0
    else:
        print("❌ Desk Relay is not running")
        return 1


def cmd_ip(args) -> int:
    """Show local IP address."""
    from .config import get_config, get_local_ip

    ip = get_local_ip()
    port = get_config().port
    print(f"📍 Local IP: {ip}")
    print(f"   Login API: http://{ip}:{port}/api/auth")
    return 0


def cmd_config(args) -> int:
    """Show current configuration."""
    from .config import get_config, get_config_paths

    print("📝 Configuration:")
    print()

    # Show config file locations
    print("   Config file search paths:")
    for path in get_config_paths():
        exists = "✓" if path.exists() else " "
        print(f"   [{exists}] {path}")
    print()

    # Show current config
    config = get_config()
    print("   Current settings:")
    print(f"   - Host: {config.host}")
    print(f"   - Port: {config.port} (broker {config.ws_port})")
    print(f"   - Streaming: {'on' if config.stream_enabled else 'off'} @ {config.fps} FPS")
    print(f"   - Quality: {config.quality}")
    print(f"   - Scale: {config.scale}")
    print(f"   - Monitor: {config.monitor}")
    print(f"   - Lockout: {config.max_attempts} attempts, {config.lockout_seconds}s")
    print(f"   - Session TTL: {config.session_ttl / 3600:g} hours")
    print(f"   - TurboJPEG: {config.use_turbojpeg}")
    print(f"   - Log level: {config.log_level}")

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="desk-relay",
        description="LAN remote desktop broker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  desk-relay start              # Start with default settings
  desk-relay start --port 9090  # Start on different port
  desk-relay start --no-stream  # Signaling and input only
  desk-relay stop               # Stop the server
  desk-relay status             # Check if running
  desk-relay ip                 # Show local IP address
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Start command
    start_parser = subparsers.add_parser("start", help="Start the server")
    start_parser.add_argument("--port", "-p", type=int, help="HTTP port; broker uses port+1 (default: 8080)")
    start_parser.add_argument("--fps", "-f", type=int, help="Target frames per second (default: 30)")
    start_parser.add_argument("--quality", "-q", type=int, help="JPEG quality 1-95 (default: 30)")
    start_parser.add_argument("--scale", "-s", type=float, help="Scale factor 0.1-1.0 (default: 1.0)")
    start_parser.add_argument("--no-stream", action="store_true", help="Do not broadcast screen frames")
    start_parser.add_argument("--config", "-c", type=str, help="Path to a config.yaml")
    start_parser.add_argument("--log-level", type=str, help="DEBUG, INFO, WARNING or ERROR")
    start_parser.set_defaults(func=cmd_start)

    # Stop command
    stop_parser = subparsers.add_parser("stop", help="Stop the server")
    stop_parser.set_defaults(func=cmd_stop)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check server status")
    status_parser.set_defaults(func=cmd_status)

    # IP command
    ip_parser = subparsers.add_parser("ip", help="Show local IP address")
    ip_parser.set_defaults(func=cmd_ip)

    # Config command
    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
