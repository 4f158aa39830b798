"""
Quick local test helper: watermarks local images/archives and writes the
result to disk. Runs the batch in-process through the execution channel, or
against a running service with --server.
"""

from __future__ import annotations

import argparse
from pathlib import Path

# Ensure project root is importable when running from scripts/
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from watermark_service.client import UploadCancelled, UploadClient, save
from watermark_service.pipeline import ImageInput, InputKind
from watermark_service.queue_worker import ChannelMessage, ExecutionChannel


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stamp file names onto local images")
    parser.add_argument("inputs", nargs="+", help="Images (jpg/png/gif) or a zip archive")
    parser.add_argument("--output-dir", default=".", help="Directory to write the result into")
    parser.add_argument("--server", default=None, help="Use a running service instead of processing locally")
    return parser.parse_args()


def _print_message(message: ChannelMessage) -> None:
    if message.type == "progress":
        print(f"\rprogress: {message.percent:5.1f}%", end="", flush=True)
    elif message.type in ("paused", "resumed", "cancelled"):
        print(f"\n{message.type}")


def run_local(paths: list[Path], output_dir: Path) -> Path:
    inputs = [
        ImageInput(name=p.name, data=p.read_bytes(), kind=InputKind.resolve(p.name))
        for p in paths
    ]
    channel = ExecutionChannel(on_message=_print_message)
    channel.start(inputs)
    try:
        terminal = None
        for message in channel.iter_messages():
            terminal = message
    except KeyboardInterrupt:
        channel.cancel()
        raise SystemExit("\ncancelled")
    print()
    if terminal.type == "error":
        raise SystemExit(f"failed: {terminal.message}")
    result = terminal.result
    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / Path(result.name).name
    target.write_bytes(result.data)
    return target


def run_remote(paths: list[Path], output_dir: Path, server: str) -> Path:
    client = UploadClient(base_url=server)
    try:
        result = client.submit(paths)
    except (KeyboardInterrupt, UploadCancelled):
        client.cancel()
        raise SystemExit("\ncancelled")
    return save(result, output_dir)


def main() -> None:
    args = parse_args()
    paths = [Path(p) for p in args.inputs]
    for path in paths:
        if not path.exists():
            raise FileNotFoundError(f"Input file not found: {path}")

    output_dir = Path(args.output_dir)
    if args.server:
        target = run_remote(paths, output_dir, args.server)
    else:
        target = run_local(paths, output_dir)
    print(f"Wrote watermarked output to {target}")


if __name__ == "__main__":
    main()
