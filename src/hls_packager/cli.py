import argparse
import json
import logging
import sys
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path

from tqdm import tqdm

from . import ffmpeg_runner
from .config import resolve_config
from .errors import MetadataExtractionError
from .prober import MetadataProber
from .service import PackagingService

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def run_package(cli_dict: dict) -> int:
    """Package one video and block until its job finishes. Returns the exit code."""
    config = resolve_config(cli_dict)
    configure_logging(config.logging.level)

    source = cli_dict["input"]
    video_id = cli_dict.get("video_id") or Path(source).stem

    with PackagingService(config) as service:
        try:
            job_id = service.submit(source, video_id)
        except (FileNotFoundError, ValueError) as e:
            print(f"❌ {e}")
            return 1

        with tqdm(total=100, desc=video_id, unit="%") as bar:
            while True:
                try:
                    summary = service.wait(job_id, timeout=0.5)
                    bar.update(summary["progressPercent"] - bar.n)
                    break
                except FutureTimeoutError:
                    summary = service.get_job(job_id)
                    if summary:
                        bar.update(summary["progressPercent"] - bar.n)

    print("\n" + "=" * 60)
    print("JOB SUMMARY")
    print("=" * 60)
    print(f"Job:                  {summary['id']}")
    print(f"Status:               {summary['status']}")
    if summary.get("errorMessage"):
        print(f"Error:                {summary['errorMessage']}")
    for path in summary["outputPaths"]:
        print(f"Output:               {path}")
    print("=" * 60)

    return 0 if summary["status"] == "completed" else 1


def run_probe(cli_dict: dict) -> int:
    config = resolve_config(cli_dict)
    configure_logging(config.logging.level)

    prober = MetadataProber(config.probe.ffprobe_path, config.probe.timeout_s)
    try:
        metadata = prober.probe(cli_dict["input"])
    except MetadataExtractionError as e:
        print(f"❌ {e}")
        return 1

    print(json.dumps(metadata.model_dump(), indent=2))
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="hls-packager", description="Adaptive-bitrate HLS packaging pipeline"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # PACKAGE
    package_parser = subparsers.add_parser("package", help="Encode a video into an HLS bundle")
    package_parser.add_argument("--input", "-i", type=str, required=True, help="Source video")
    package_parser.add_argument("--video-id", type=str, help="Video id (default: file stem)")
    package_parser.add_argument("--output", "-o", type=str, help="Output root directory")
    package_parser.add_argument("--segment-duration", type=int, help="HLS segment duration (s)")
    package_parser.add_argument("--timeout", type=int, help="Per-rendition encode timeout (s)")
    package_parser.add_argument(
        "--no-thumbnail", action="store_true", default=None, help="Skip thumbnail extraction"
    )
    package_parser.add_argument(
        "--cleanup-on-failure",
        action="store_true",
        default=None,
        help="Delete partial rendition output if the job fails",
    )
    package_parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )

    # PROBE
    probe_parser = subparsers.add_parser("probe", help="Print source metadata as JSON")
    probe_parser.add_argument("--input", "-i", type=str, required=True, help="Source video")

    # CHECK FFMPEG
    subparsers.add_parser("check", help="Verify dependencies")

    args = parser.parse_args()

    if args.command == "package":
        # Convert args to dict, filtering None
        cli_dict = {k: v for k, v in vars(args).items() if v is not None}
        sys.exit(run_package(cli_dict))

    elif args.command == "probe":
        cli_dict = {k: v for k, v in vars(args).items() if v is not None}
        sys.exit(run_probe(cli_dict))

    elif args.command == "check":
        print("Checking dependencies...")
        config = resolve_config()
        if ffmpeg_runner.check_ffmpeg(config.encoding.ffmpeg_path):
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
