import io
import sys
from dataclasses import fields

import pytest
from loguru import logger
from rich.console import Console

from tournament_dashboard import settings
from tournament_dashboard.backend import SimulatedBackend
from tournament_dashboard.lifecycle import DashboardApp
from tournament_dashboard.log_setup import LOG_FILE, attach_event_sink, configure_logging
from tournament_dashboard.main import build_backend, build_config, build_parser, main
from tournament_dashboard.models import EventLevel
from tournament_dashboard.settings import DashboardConfig
from tournament_dashboard.terminal import FakeTerminal

from conftest import RecordingBackend, fake_sampler, messages, online_pinger


class BrokenKeyboard(FakeTerminal):
    def poll_key(self, timeout):
        raise RuntimeError("keyboard unplugged")


@pytest.fixture
def restore_logging():
    yield
    logger.remove()
    logger.add(sys.stderr)


def _app(config, terminal, **kwargs):
    return DashboardApp(
        config=config,
        backend=kwargs.pop("backend", RecordingBackend()),
        terminal=terminal,
        pinger=online_pinger,
        sampler=fake_sampler,
        mirror_logs=False,
        **kwargs,
    )


# --- Lifecycle ----------------------------------------------------------------


@pytest.mark.asyncio
async def test_q_quits_and_restores_the_terminal(config):
    terminal = FakeTerminal(["q"], columns=80, rows=24, write_delay=0.3)
    app = _app(config, terminal)

    assert await app.run() == 0

    assert not app.state.is_running
    assert terminal.transitions == ["raw", "normal"]
    # the frame in flight at quit lands before the terminal is restored
    assert terminal.timeline[-1] == "normal"
    assert "write" in terminal.timeline
    assert terminal.cursor_visible
    assert terminal.writes
    log = messages(app.state)
    assert log[0] == "Dashboard started"
    assert "Shutting down" in log


@pytest.mark.asyncio
async def test_auto_start_runs_the_pipeline(config):
    terminal = FakeTerminal(columns=80, rows=24)
    backend = RecordingBackend()
    app = _app(config, terminal, backend=backend, auto_start=True)

    await app.start()
    await app.orchestrator.wait_idle()
    await app.stop()

    assert backend.calls == ["download"] * 3 + ["train", "predict", "submit"]
    assert "Pipeline complete" in messages(app.state)
    assert not app.state.is_running


@pytest.mark.asyncio
async def test_escaping_fault_produces_a_report_and_exit_code(config):
    terminal = BrokenKeyboard(columns=80, rows=24)
    output = io.StringIO()
    app = _app(config, terminal, console=Console(file=output, width=100))

    assert await app.run() == 1

    assert terminal.transitions == ["raw", "normal"]
    assert app.fatal_report is not None
    assert app.fatal_report[0].lines[0] == "Error: RuntimeError: keyboard unplugged"
    text = output.getvalue()
    assert "Dashboard encountered an error and was closed." in text
    assert "TROUBLESHOOTING SUGGESTIONS" in text


@pytest.mark.asyncio
async def test_run_headless(config):
    app = _app(config, FakeTerminal())
    assert await app.run_headless() == 0
    assert not app.state.is_running
    assert app.state.last_submission_id == "sub-1"


@pytest.mark.asyncio
async def test_run_headless_reports_failure(config):
    backend = RecordingBackend(failures={"download": ConnectionError("connection refused")})
    app = _app(config, FakeTerminal(), backend=backend)
    assert await app.run_headless() == 1


def test_diagnose_prints_every_section(config):
    output = io.StringIO()
    app = _app(config, FakeTerminal(), console=Console(file=output, width=100))
    sections = app.diagnose()
    assert len(sections) == 10
    assert "CONFIGURATION STATUS" in output.getvalue()


# --- Logging ------------------------------------------------------------------


def test_configure_logging_writes_to_the_log_dir(tmp_path, restore_logging):
    path = configure_logging(tmp_path / "logs", dashboard=True)
    logger.info("hello from the test")
    logger.complete()
    assert path == tmp_path / "logs" / LOG_FILE
    assert "hello from the test" in path.read_text()


def test_event_sink_mirrors_outside_warnings_only(state, restore_logging):
    logger.remove()
    handler = attach_event_sink(state)
    try:
        logger.info("routine message")
        logger.warning("disk almost full")
        state.add_event(EventLevel.WARNING, "already in the event log")
    finally:
        logger.remove(handler)
    log = messages(state)
    assert len(log) == 2
    assert log[0].endswith(": disk almost full")
    assert log[1] == "already in the event log"


# --- Command line -------------------------------------------------------------


def test_cli_overrides_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("AUTO_SUBMIT", "false")
    monkeypatch.setenv("AUTO_TRAIN_AFTER_DOWNLOAD", "true")
    args = build_parser().parse_args(
        ["--demo", "--no-auto-train", "--auto-submit", "--refresh", "0.5", "--log-dir", str(tmp_path)]
    )
    config = build_config(args)
    assert not config.auto_train_after_download
    assert config.auto_submit
    assert config.refresh_interval == 0.5
    assert config.log_dir == tmp_path
    assert isinstance(build_backend(args, config), SimulatedBackend)


def test_cli_defaults_keep_environment(monkeypatch):
    monkeypatch.setenv("AUTO_SUBMIT", "yes")
    args = build_parser().parse_args([])
    config = build_config(args)
    assert config.auto_submit
    assert args.show_dashboard
    assert not args.auto_start


def test_cli_rejects_non_positive_refresh():
    args = build_parser().parse_args(["--refresh", "0"])
    with pytest.raises(SystemExit):
        build_config(args)


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("NUMERAI_PUBLIC_ID", "pub")
    monkeypatch.setenv("NUMERAI_SECRET_KEY", "secret")
    monkeypatch.setenv("TOURNAMENT_MODELS", "alpha, beta,,gamma")
    monkeypatch.setenv("REQUIRED_DATASETS", "train,live")
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    config = DashboardConfig.from_env()
    assert config.has_credentials
    assert config.models == ["alpha", "beta", "gamma"]
    assert config.required_datasets == ("train", "live")
    assert config.data_dir == tmp_path
    assert "secret" not in repr(config)


def test_settings_have_one_source_of_defaults():
    assert set(settings._read_env()) == {f.name for f in fields(DashboardConfig)}
    # nothing in the environment changed since import, so both paths agree
    assert DashboardConfig.from_env() == DashboardConfig()


def test_main_diagnose(monkeypatch, tmp_path, capsys, restore_logging):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LAST_KNOWN_GOOD_PATH", str(tmp_path / "lkg.json"))
    assert main(["--diagnose"]) == 0
    assert (tmp_path / "logs" / LOG_FILE).exists()
