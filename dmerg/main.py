#!/usr/bin/env python3
"""dmerg: merge stdin with the kernel log, live on the console and sorted on disk."""

import argparse
import io
import logging
import sys

from dmerg.aggregator import MergeAggregator
from dmerg.config import load_config, load_yaml_config
from dmerg.kernel import KernelReader, SourceUnavailable, open_kernel_source
from dmerg.models import now
from dmerg.shutdown import ShutdownController
from dmerg.stdin_reader import StdinReader
from dmerg.writer import OutputWriteError, OutputWriter

logger = logging.getLogger(__name__)


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dmerg",
        description="Merge standard input with kernel log messages in chronological order.",
    )
    parser.add_argument(
        "-f", "--full", action="store_true", default=None,
        help="Include the full kernel log, not only messages logged after startup",
    )
    parser.add_argument(
        "-o", "--output", default=None,
        help="Write output to OUTPUT instead of a randomly named file",
    )
    parser.add_argument(
        "-c", "--console-off", action="store_true", default=None,
        help="Do not write merged lines to standard output",
    )
    parser.add_argument(
        "-d", "--dmesg", action="store_true", default=None,
        help="Poll dmesg instead of following journald",
    )
    parser.add_argument(
        "--poll-interval", type=float, default=None,
        help="Seconds between dmesg polls (default: 1.0)",
    )
    parser.add_argument(
        "--log-level", default=None,
        help="Diagnostic log level on stderr (default: WARNING)",
    )
    parser.add_argument(
        "--config", default=None,
        help="Path to YAML config file",
    )
    return parser


def main(argv: list[str] | None = None, stdin=None) -> int:
    parser = build_cli_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [dmerg] %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    try:
        config = load_config(args, load_yaml_config(args.config))
    except ValueError as e:
        parser.error(str(e))
    logging.getLogger("dmerg").setLevel(config.log_level)
    logger.info("Config: dmesg=%s, full=%s, console_off=%s, output=%s",
                config.use_polled_snapshot, config.full_kernel_output,
                config.console_disabled, config.output_path or "<generated>")

    cutoff = now()
    try:
        source = open_kernel_source(config, cutoff)
    except SourceUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if stdin is None:
        # Unbuffered so an abandoned reader thread holds no interpreter-level lock
        stdin = io.FileIO(sys.stdin.fileno(), "r", closefd=False)

    aggregator = MergeAggregator(console_enabled=not config.console_disabled)
    writer = OutputWriter(config.output_path, prefix=config.output_prefix)
    controller = ShutdownController(aggregator, writer, drain_timeout=config.drain_timeout)

    kernel_reader = KernelReader(source, aggregator.submit)
    stdin_reader = StdinReader(stdin, aggregator.submit, on_eof=controller.request_stop)
    controller.add_producer(kernel_reader)
    controller.add_producer(stdin_reader)

    controller.install_signal_handlers()
    try:
        kernel_reader.start()
        stdin_reader.start()
        try:
            path = controller.run()
        except OutputWriteError as e:
            print(f"Error: {e}", file=sys.stderr)
            print(f"Error: {aggregator.count} merged entries were lost", file=sys.stderr)
            return 1
    finally:
        controller.restore_signal_handlers()

    print(f"\n+ Output written to {path}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
