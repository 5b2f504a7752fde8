import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger

from .backend import PipelineBackend, SimulatedBackend, load_backend
from .lifecycle import DashboardApp
from .log_setup import configure_logging
from .settings import DashboardConfig


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Terminal dashboard for the tournament pipeline.")
    parser.add_argument(
        "--demo",
        dest="demo",
        action="store_true",
        help="Use the simulated backend instead of a configured one.",
    )
    parser.add_argument(
        "--backend",
        dest="backend",
        help="Pipeline backend factory as 'package.module:factory'. Defaults to the simulated backend.",
    )
    parser.add_argument(
        "--no-auto-train",
        dest="auto_train",
        action="store_false",
        help="Do not start training automatically after all datasets are downloaded.",
    )
    parser.add_argument(
        "--auto-submit",
        dest="auto_submit",
        action="store_true",
        help="Submit predictions automatically after they are generated.",
    )
    parser.add_argument(
        "--auto-start",
        dest="auto_start",
        action="store_true",
        help="Run the full pipeline as soon as the dashboard starts.",
    )
    parser.add_argument(
        "--refresh",
        dest="refresh",
        type=float,
        help="Dashboard refresh interval in seconds.",
    )
    parser.add_argument(
        "--log-dir",
        dest="log_dir",
        type=Path,
        help="Directory for the rotating log file.",
    )
    parser.add_argument(
        "--no-dashboard",
        dest="show_dashboard",
        action="store_false",
        help="Run the pipeline once without the terminal UI and log to stderr.",
    )
    parser.add_argument(
        "--diagnose",
        dest="diagnose",
        action="store_true",
        help="Print the diagnostic report and exit.",
    )
    parser.set_defaults(auto_train=None, auto_submit=None, show_dashboard=True)
    return parser


def build_config(args: argparse.Namespace) -> DashboardConfig:
    config = DashboardConfig.from_env()
    if args.auto_train is not None:
        config.auto_train_after_download = args.auto_train
    if args.auto_submit is not None:
        config.auto_submit = args.auto_submit
    if args.refresh is not None:
        if args.refresh <= 0:
            raise SystemExit("--refresh must be positive")
        config.refresh_interval = args.refresh
    if args.log_dir is not None:
        config.log_dir = args.log_dir
    return config


def build_backend(args: argparse.Namespace, config: DashboardConfig) -> PipelineBackend:
    if args.backend and not args.demo:
        return load_backend(args.backend)
    if not args.demo:
        logger.warning("No pipeline backend configured, using simulated data")
    return SimulatedBackend(data_dir=config.data_dir, epochs=config.default_epochs)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the tournament dashboard."""
    args = build_parser().parse_args(argv)
    config = build_config(args)

    if args.diagnose:
        configure_logging(config.log_dir, dashboard=False)
        app = DashboardApp(config=config, backend=SimulatedBackend(data_dir=config.data_dir))
        app.diagnose()
        return 0

    configure_logging(config.log_dir, dashboard=args.show_dashboard)
    backend = build_backend(args, config)
    app = DashboardApp(config=config, backend=backend, auto_start=args.auto_start)

    try:
        if args.show_dashboard:
            return asyncio.run(app.run())
        return asyncio.run(app.run_headless())
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
