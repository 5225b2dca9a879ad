"""CLI entrypoints for gencar commands."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict

from .car import ArchiveError, load_graph
from .commp import CommPAccumulator, InvalidSizeError, piece_cid
from .config import (
    CONFIG_FILENAME,
    RESULT_COMPACT,
    RESULT_VERBOSE,
    ConfigError,
    GenerateSettings,
    load_config,
    load_publish_config,
)
from .logging import configure_logging, get_logger
from .manifest import ManifestError, iter_manifests
from .models import JobResult
from .orchestrator import CarGenerator
from .publish import PublishError, Publisher
from .scheduler import BatchError, JobScheduler


def _add_verbose_option(
    parser: argparse.ArgumentParser, *, suppress_default: bool = False
) -> None:
    kwargs: dict[str, object] = {
        "action": "store_true",
        "help": "Increase log verbosity for troubleshooting.",
    }
    if suppress_default:
        kwargs["default"] = argparse.SUPPRESS
    else:
        kwargs["default"] = False
    parser.add_argument(
        "-v",
        "--verbose",
        **kwargs,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gencar",
        description="Generate CAR archives from lists of files and compute their piece commitments.",
    )
    _add_verbose_option(parser)
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write log records to this file.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate_parser = subparsers.add_parser(
        "generate",
        help="Generate one archive per manifest and print a JSON result line for each.",
    )
    _add_verbose_option(generate_parser, suppress_default=True)
    generate_parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help=f"Settings file (defaults to {CONFIG_FILENAME} in the current directory).",
    )
    generate_parser.add_argument(
        "-p",
        "--parent",
        type=Path,
        default=None,
        help="Parent path of the dataset; every span must live under it.",
    )
    generate_parser.add_argument(
        "-i",
        "--input",
        default=None,
        help=(
            "With --single, the file or folder to include in full. Otherwise a JSON file "
            "listing the file spans to include ('-' reads stdin)."
        ),
    )
    generate_parser.add_argument(
        "--input-json",
        type=Path,
        default=None,
        help="JSON-lines file; every line is a manifest producing its own archive.",
    )
    generate_parser.add_argument(
        "--single",
        action="store_true",
        default=None,
        help="Treat --input as a single file or folder to include in full.",
    )
    generate_parser.add_argument(
        "-s",
        "--piece-size",
        type=int,
        default=None,
        help="Target piece size; defaults to the smallest size that fits.",
    )
    generate_parser.add_argument(
        "-o",
        "--out-dir",
        type=Path,
        default=None,
        help="Output directory for finished archives.",
    )
    generate_parser.add_argument(
        "-t",
        "--tmp-dir",
        type=Path,
        default=None,
        help="Scratch directory for archives being written (defaults to --out-dir).",
    )
    generate_parser.add_argument(
        "--parallel",
        type=int,
        default=None,
        help="Number of archives generated concurrently.",
    )
    generate_parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help="Chunk size in bytes used to split file contents.",
    )
    generate_parser.add_argument(
        "--result",
        choices=[RESULT_COMPACT, RESULT_VERBOSE],
        default=None,
        help="Result record form; verbose adds the object graph and path index.",
    )

    verify_parser = subparsers.add_parser(
        "verify",
        help="Check every record of an archive and recompute its piece commitment.",
    )
    _add_verbose_option(verify_parser, suppress_default=True)
    verify_parser.add_argument("archive", type=Path, help="Archive to verify.")

    return parser


def _settings_from_args(args: argparse.Namespace) -> GenerateSettings:
    base = load_config(args.config if args.config is not None else Path.cwd())
    settings = base.merged(
        parent=args.parent,
        input=args.input,
        input_json=args.input_json,
        single=args.single,
        piece_size=args.piece_size,
        out_dir=args.out_dir,
        scratch_dir=args.tmp_dir,
        parallel=args.parallel,
        chunk_size=args.chunk_size,
        result=args.result,
    )
    if settings.parent is None:
        raise ConfigError("A parent directory is required (--parent or `parent` in the config file)")
    if settings.publish is None:
        publish = load_publish_config()
        if publish is not None:
            settings = settings.merged(publish=publish)
    return settings


def run_generate(settings: GenerateSettings) -> list[JobResult]:
    """Generate every archive described by ``settings``, printing results as they finish."""
    logger = get_logger("cli")
    publisher = Publisher(settings.publish) if settings.publish is not None else None
    generator = CarGenerator(publisher=publisher, chunk_size=settings.chunk_size)
    scheduler = JobScheduler(generator, workers=settings.parallel)
    verbose = settings.verbose_result

    def _print(result: JobResult) -> None:
        print(json.dumps(result.to_dict(verbose=verbose)), flush=True)

    settings.out_dir.mkdir(parents=True, exist_ok=True)
    settings.effective_scratch_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Running with %d worker(s)", settings.parallel)
    try:
        return scheduler.run(
            iter_manifests(settings),
            base_dir=settings.parent,  # type: ignore[arg-type]
            out_dir=settings.out_dir,
            scratch_dir=settings.effective_scratch_dir,
            piece_size=settings.piece_size,
            verbose=verbose,
            on_result=_print,
        )
    except KeyboardInterrupt:
        scheduler.cancel()
        raise


def run_verify(archive: Path) -> Dict[str, Any]:
    """Replay ``archive`` and recompute its piece commitment."""
    with archive.open("rb") as handle:
        graph = load_graph(handle)
    accumulator = CommPAccumulator()
    with archive.open("rb") as handle:
        for block in iter(lambda: handle.read(1 << 20), b""):
            accumulator.write(block)
    commp, piece_size = accumulator.finish()
    return {
        "DataCid": str(graph.root),
        "PieceCid": str(piece_cid(commp)),
        "PieceSize": piece_size,
        "CarSize": archive.stat().st_size,
        "Records": len(graph.order),
    }


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for gencar commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=bool(args.verbose), log_file=args.log_file)

    if args.command == "generate":
        try:
            settings = _settings_from_args(args)
            run_generate(settings)
        except ConfigError as exc:
            parser.exit(2, f"gencar: configuration error: {exc}\n")
        except ManifestError as exc:
            parser.exit(1, f"gencar generate failed: invalid manifest: {exc}\n")
        except BatchError as exc:
            parser.exit(
                1,
                f"gencar generate failed after {len(exc.results)} archive(s): {exc}\n"
                "Run with --verbose for more details.\n",
            )
        except (InvalidSizeError, PublishError, OSError) as exc:
            parser.exit(1, f"gencar generate failed: {exc}\nRun with --verbose for more details.\n")
        except KeyboardInterrupt:
            parser.exit(130, "gencar generate interrupted\n")
    elif args.command == "verify":
        try:
            summary = run_verify(args.archive)
        except FileNotFoundError as exc:
            parser.exit(1, f"{exc}\n")
        except ArchiveError as exc:
            parser.exit(1, f"gencar verify failed: {exc}\n")
        print(json.dumps(summary))
    else:  # pragma: no cover - argparse enforces choices
        parser.exit(1, "Unknown command\n")


if __name__ == "__main__":
    main(sys.argv[1:])
