from pathlib import Path

import pytest

from tournament_dashboard.keys import Key, decode_key
from tournament_dashboard.models import SystemMetrics
from tournament_dashboard.orchestrator import PipelineOrchestrator
from tournament_dashboard.settings import DashboardConfig
from tournament_dashboard.state import DashboardState


class RecordingBackend:
    """Backend that completes every stage instantly and records what was called."""

    def __init__(self, *, epochs=3, rows=10, failures=None):
        self.epochs = epochs
        self.rows = rows
        self.failures = dict(failures or {})
        self.calls = []
        self.downloads = []
        self.submitted = []
        self.stakes = {}

    def _maybe_fail(self, stage):
        fault = self.failures.get(stage)
        if fault is not None:
            raise fault

    def count(self, stage):
        return self.calls.count(stage)

    def download(self, dataset, progress):
        self.calls.append("download")
        self._maybe_fail("download")
        progress(50, 100)
        progress(100, 100)
        self.downloads.append(dataset)
        return Path(f"{dataset}.parquet")

    def load_data(self):
        return {"rows": self.rows}

    def train(self, data, on_epoch):
        self.calls.append("train")
        self._maybe_fail("train")
        for epoch in range(1, self.epochs + 1):
            on_epoch(epoch, self.epochs, 1.0 / epoch, 0.01 * epoch)
        return "trained-model"

    def predict(self, model, progress):
        self.calls.append("predict")
        self._maybe_fail("predict")
        progress(self.rows, self.rows)
        return [0.5] * self.rows

    def submit(self, predictions, model_name):
        self.calls.append("submit")
        self._maybe_fail("submit")
        self.submitted.append((len(predictions), model_name))
        return f"sub-{len(self.submitted)}"

    def model_performance(self, name):
        return {"corr": 0.02, "mmc": 0.01, "fnc": 0.015, "sharpe": 1.2, "stake": 10.0, "payout": 3.0}

    def set_stake(self, model_name, amount):
        self.calls.append("stake")
        self._maybe_fail("stake")
        self.stakes[model_name] = amount
        return amount


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def keys(*sequences):
    """Decode raw key sequences; multi-character plain strings are split into characters."""
    decoded = []
    for sequence in sequences:
        if isinstance(sequence, Key):
            decoded.append(sequence)
        elif len(sequence) > 1 and not sequence.startswith("\x1b"):
            decoded.extend(decode_key(char) for char in sequence)
        else:
            decoded.append(decode_key(sequence))
    return decoded


def fake_sampler(uptime_seconds=0.0, *, disk_path="."):
    return SystemMetrics(
        cpu_percent=12.5,
        memory_used_gb=3.0,
        memory_total_gb=16.0,
        disk_free_gb=100.0,
        disk_total_gb=500.0,
        threads=8,
        uptime_seconds=uptime_seconds,
    )


async def online_pinger(url, *, timeout=5.0):
    return True, 12.0


@pytest.fixture
def config(tmp_path):
    return DashboardConfig(
        refresh_interval=0.05,
        fast_refresh_interval=0.02,
        input_poll_interval=0.01,
        model_update_interval=60,
        network_check_interval=60,
        metrics_interval=60,
        auto_train_after_download=True,
        auto_predict_after_train=True,
        auto_submit=False,
        grace_delay=2.0,
        required_datasets=("train", "validation", "live"),
        default_epochs=3,
        data_dir=tmp_path / "data",
        model_dir=tmp_path / "models",
        log_dir=tmp_path / "logs",
        last_known_good_path=tmp_path / "last_known_good.json",
        public_id="",
        secret_key="",
        models=["alpha", "beta"],
    )


@pytest.fixture
def state(config):
    return DashboardState(config)


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def orchestrator(state, backend, sleep):
    return PipelineOrchestrator(state, backend, sleep=sleep, pause_poll=0.01)


def messages(state):
    return [event.message for event in state.events]
