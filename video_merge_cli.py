#!/usr/bin/env python3
"""CLI tool for merging an intro clip and a main clip without the API server."""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from video_merge.config import MergeConfig, setup_logging
from video_merge.errors import MergeError
from video_merge.filter_graph import bracket, describe_audio_strategy
from video_merge.orchestrator import MergeOrchestrator
from video_merge.transcoder import TranscodeInvoker


class FileAndConsoleLogger:
    """Dual logger that writes to both file and console."""

    def __init__(self, log_file: Optional[Path] = None, quiet: bool = False):
        """Initialize logger with optional file output."""
        self.log_file = log_file
        self.quiet = quiet
        self.file_handle = None

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            self.file_handle = open(self.log_file, 'w', encoding='utf-8', buffering=1)

    def log(self, message: str):
        """Log message to both console and file."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        formatted_msg = f"[{timestamp}] {message}"

        if not self.quiet:
            print(formatted_msg)
            sys.stdout.flush()

        if self.file_handle:
            self.file_handle.write(formatted_msg + "\n")
            self.file_handle.flush()

    def close(self):
        """Close file handle if open."""
        if self.file_handle:
            self.file_handle.close()


def build_orchestrator(config: MergeConfig, logger: FileAndConsoleLogger,
                       show_ffmpeg: bool) -> MergeOrchestrator:
    invoker = TranscodeInvoker(
        ffmpeg_path=config.ffmpeg_path,
        profile=config.profile,
        timeout=config.transcode_timeout,
        progress_callback=logger.log if show_ffmpeg else None
    )
    return MergeOrchestrator(config, invoker=invoker)


async def show_plan(orchestrator: MergeOrchestrator, intro: Path, main: Path,
                    logger: FileAndConsoleLogger):
    """Probe both inputs and print the filter graph without transcoding."""
    intro_media, main_media, plan = await orchestrator.plan_for_files(intro, main)
    logger.log(f"Intro audio: {'yes' if intro_media.has_audio else 'no'}")
    logger.log(f"Main audio:  {'yes' if main_media.has_audio else 'no'}")
    logger.log(f"Strategy:    {describe_audio_strategy(intro_media.has_audio, main_media.has_audio)}")
    logger.log("Filter chains:")
    for chain in plan.filter_chains():
        logger.log(f"  {chain}")
    logger.log("Map: " + " ".join(f"-map {bracket(label)}" for label in plan.output_labels()))


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Video Merge CLI Tool - Join an intro clip and a main clip",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Merge two clips
  %(prog)s -i intro.mp4 -m lesson.mov -o merged.mp4

  # Show the filter graph that would be used
  %(prog)s -i intro.mp4 -m lesson.mov --plan-only

  # Keep a log of FFmpeg output
  %(prog)s -i intro.mp4 -m lesson.mov -o merged.mp4 --show-ffmpeg --log merge.log
        """
    )

    parser.add_argument(
        '-i', '--intro',
        type=Path,
        required=True,
        help='Intro video (played first)'
    )

    parser.add_argument(
        '-m', '--main',
        type=Path,
        required=True,
        help='Main video (played second)'
    )

    parser.add_argument(
        '-o', '--output',
        type=Path,
        help='Output MP4 path (required unless --plan-only)'
    )

    parser.add_argument(
        '--plan-only',
        action='store_true',
        help='Probe inputs and print the filter graph without transcoding'
    )

    parser.add_argument(
        '--timeout',
        type=float,
        help='Transcode timeout in seconds (default: TRANSCODE_TIMEOUT or 900)'
    )

    parser.add_argument(
        '--show-ffmpeg',
        action='store_true',
        help='Echo FFmpeg diagnostic output'
    )

    parser.add_argument(
        '--log',
        type=Path,
        help='Log file path for progress output'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    if not args.plan_only and args.output is None:
        parser.error("--output is required unless --plan-only is given")

    config = MergeConfig.from_env()
    if args.timeout is not None:
        config.transcode_timeout = args.timeout

    setup_logging(config.log_level, verbose=args.verbose)

    logger = FileAndConsoleLogger(args.log)

    try:
        orchestrator = build_orchestrator(config, logger, args.show_ffmpeg)

        if args.plan_only:
            asyncio.run(show_plan(orchestrator, args.intro, args.main, logger))
            return 0

        logger.log(f"Intro:  {args.intro}")
        logger.log(f"Main:   {args.main}")
        logger.log(f"Output: {args.output}")

        output = asyncio.run(orchestrator.merge_files(args.intro, args.main, args.output))
        logger.log(f"✓ Video saved: {output}")
        return 0

    except MergeError as e:
        logger.log(f"✗ Error: {e.message}")
        return 1
    except KeyboardInterrupt:
        logger.log("\n⏹️  Process interrupted by user")
        return 1
    except Exception as e:
        logger.log(f"\n❌ Critical error: {str(e)}")
        logging.exception("Error during video merge")
        return 1
    finally:
        logger.close()


if __name__ == "__main__":
    sys.exit(main())
