"""Thin CLI entry point — builds ExportOptions and calls the engine."""

import argparse
import logging
import sys
from pathlib import Path

from replayforge.console import CommandChannel, ConsoleClosedError, ConsoleConnectionError
from replayforge.engine import export_clips
from replayforge.manifest import RESOLUTIONS, ExportOptions, IntroConfig, load_manifest
from replayforge.models import ClipRange, ExportProgress
from replayforge.settings import load_settings


def parse_clip(text: str) -> ClipRange:
    """Parse ``ID:START:END[:PLAYER]``; PLAYER may be a name or ``#slot``."""
    parts = text.split(":", 3)
    if len(parts) < 3:
        raise argparse.ArgumentTypeError(f"expected ID:START:END[:PLAYER], got {text!r}")
    clip_id, start, end = parts[:3]
    player = parts[3] if len(parts) == 4 else None
    try:
        start_tick, end_tick = int(start), int(end)
    except ValueError:
        raise argparse.ArgumentTypeError(f"ticks must be integers in {text!r}")

    if player and player.startswith("#") and player[1:].isdigit():
        return ClipRange(clip_id, start_tick, end_tick, player_slot=int(player[1:]))
    return ClipRange(clip_id, start_tick, end_tick, player_name=player or None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replayforge",
        description="ReplayForge — record demo replay clips and assemble montages.",
    )
    parser.add_argument("--settings", type=Path, help="Settings YAML file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    exp = sub.add_parser("export", help="Record clips from a demo file")
    exp.add_argument("demo", nargs="?", type=Path, help="Demo file to replay")
    exp.add_argument("--manifest", "-m", type=Path, help="Path to a JSON export manifest")
    exp.add_argument("--clip", "-c", action="append", type=parse_clip, default=[],
                     metavar="ID:START:END[:PLAYER]", help="Clip tick range (repeatable)")
    exp.add_argument("--output-dir", "-o", type=Path, help="Output directory")
    exp.add_argument("--resolution", choices=sorted(RESOLUTIONS), default="1080p")
    exp.add_argument("--speed", type=float, default=1.0, help="Playback speed while recording (0-10]")
    exp.add_argument("--montage", action="store_true", help="Also join the clips into a montage")
    exp.add_argument("--fade", type=float, default=0.5, help="Montage crossfade seconds (0 = hard cuts)")
    exp.add_argument("--tick-rate", type=int, default=None, help="Demo tick rate")
    exp.add_argument("--fps", type=int, default=60, help="Capture frame rate")
    exp.add_argument("--intro", metavar="MAP", help="Prepend a cinematic intro titled MAP")
    exp.add_argument("--intro-duration", type=float, default=4.0, help="Intro length in seconds")

    con = sub.add_parser("console", help="Send raw commands to a running game")
    con.add_argument("commands", nargs="+", help="Console commands, sent in order")
    con.add_argument("--port", type=int, help="Console port (default from settings)")
    con.add_argument("--delay", type=float, default=0.5, help="Base delay between commands")

    serve = sub.add_parser("serve", help="Launch the web API")
    serve.add_argument("--port", type=int, default=8321, help="Port to listen on")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings(args.settings)

    if args.command == "serve":
        from replayforge.web import create_app
        app = create_app(settings=settings)
        print(f"ReplayForge web API: http://{args.host}:{args.port}")
        app.run(host=args.host, port=args.port, debug=False, threaded=True)
        return

    if args.command == "console":
        port = args.port or settings.get_int("console_port", 2121)
        try:
            CommandChannel(port=port).send_batch(args.commands, base_delay=args.delay)
        except (ConsoleConnectionError, ConsoleClosedError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        return

    if args.manifest:
        options = load_manifest(args.manifest)
    elif args.demo and args.clip:
        options = ExportOptions(
            demo_path=args.demo,
            clips=args.clip,
            output_dir=args.output_dir,
            resolution=args.resolution,
            playback_speed=args.speed,
            montage=args.montage or bool(args.intro),
            fade_duration=args.fade,
            tick_rate=args.tick_rate,
            fps=args.fps,
            intro=IntroConfig(
                enabled=bool(args.intro),
                map_name=args.intro,
                duration=args.intro_duration,
            ),
        )
    else:
        print("Error: provide either DEMO with --clip, or --manifest.", file=sys.stderr)
        sys.exit(1)

    def on_progress(p: ExportProgress) -> None:
        print(f"  [{p.percent:3.0f}%] {p.message}")

    result = export_clips(options, on_progress=on_progress, settings=settings)

    print()
    if not result.success:
        print(f"Export failed: {result.error}", file=sys.stderr)
        sys.exit(1)
    print(f"Done! {len(result.clips)} clip(s):")
    for path in result.clips:
        print(f"  {path}")
    if result.montage:
        print(f"  Montage: {result.montage}")
