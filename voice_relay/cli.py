"""
Voice Relay CLI - Command-line interface for the relay server.

Entry point:
    voice-relay   - join the configured voice channel and serve listeners
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import RelayConfig
from .logging_config import configure_logging

logger = logging.getLogger("voice_relay")

# Fix Windows console encoding for unicode characters
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")


def validate_port(value: str) -> int:
    """Validate port number is in valid range."""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")

    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"Port must be between 1 and 65535, got: {port}")
    return port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voice-relay",
        description="Voice Relay - Stream a Discord voice channel to web listeners",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  voice-relay                          # Settings from .env / environment
  voice-relay --port 8080              # Custom listener port
  voice-relay --config relay.json      # Overlay settings from a JSON file
        """,
    )
    parser.add_argument(
        "--host", type=str, default=None, help="Bind address (default: $HOST or 0.0.0.0)"
    )
    parser.add_argument(
        "--port",
        "-p",
        type=validate_port,
        default=None,
        help="Listener port (default: $PORT or 3000)",
    )
    parser.add_argument(
        "--static-dir",
        type=str,
        default=None,
        help="Static asset directory (default: $STATIC_DIR or public)",
    )
    parser.add_argument("--config", type=str, default=None, help="JSON config file to overlay")
    parser.add_argument("--ffmpeg", type=str, default=None, help="Path to the ffmpeg binary")
    parser.add_argument("--bitrate", type=str, default=None, help="Encoder bitrate, e.g. 128k")
    parser.add_argument("--json-logs", action="store_true", help="Emit structured JSON logs")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    return parser


def resolve_config(args: argparse.Namespace) -> RelayConfig:
    """Environment first, then the JSON file, then explicit flags."""
    config = RelayConfig.from_env()
    if args.config:
        config = RelayConfig.load(Path(args.config), base=config)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.static_dir:
        config.server.static_dir = args.static_dir
    if args.ffmpeg:
        config.encoder.ffmpeg_path = args.ffmpeg
    if args.bitrate:
        config.encoder.bitrate = args.bitrate
    return config


async def run_relay(config: RelayConfig) -> None:
    """Run the Discord client and the relay server until a stop signal."""
    from .context import PipelineContext
    from .discord_source import DiscordVoiceSource, RelayBot
    from .server import RelayServer

    bot = RelayBot()
    source = DiscordVoiceSource(bot, config.discord.guild_id, config.discord.channel_id)
    ctx = PipelineContext(config, source)
    server = RelayServer(ctx)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, server.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(server.stop))

    def on_bot_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Discord client stopped: {exc}")
            server.stop()

    bot_task = asyncio.create_task(bot.start(config.discord.token), name="discord")
    bot_task.add_done_callback(on_bot_done)
    try:
        await server.run()
    finally:
        await bot.close()
        if not bot_task.done():
            bot_task.cancel()
            try:
                await bot_task
            except asyncio.CancelledError:
                pass


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, json_logs=True if args.json_logs else None)

    config = resolve_config(args)
    if not config.discord.token:
        logger.error("DISCORD_TOKEN not set - add it to .env or environment")
        return 1
    if config.discord.channel_id is None:
        logger.error("VOICE_CHANNEL_ID not set - add it to .env or environment")
        return 1

    logger.info(
        f"Starting relay (channel {config.discord.channel_id}, "
        f"port {config.server.port}, bitrate {config.encoder.bitrate})"
    )
    try:
        asyncio.run(run_relay(config))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
