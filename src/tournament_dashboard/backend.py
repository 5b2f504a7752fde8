"""
Pipeline collaborators.

The dashboard does not talk to the tournament API or train models itself. It
drives a :class:`PipelineBackend`, calling each method from a worker thread
and passing callbacks that report progress back into the dashboard state.
Callbacks may raise ``OperationCancelled``; backends should let it propagate.
"""

from __future__ import annotations

import importlib
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

from loguru import logger

from .exceptions import APIException, DataValidationError

# (bytes_done, bytes_total)
DownloadCallback = Callable[[int, int], None]
# (epoch, total_epochs, loss, val_score)
EpochCallback = Callable[[int, int, float, "float | None"], None]
# (rows_done, rows_total)
RowsCallback = Callable[[int, int], None]


@runtime_checkable
class PipelineBackend(Protocol):
    """Blocking collaborator calls used by the orchestrator."""

    def download(self, dataset: str, progress: DownloadCallback) -> Path: ...

    def load_data(self) -> Any: ...

    def train(self, data: Any, on_epoch: EpochCallback) -> Any: ...

    def predict(self, model: Any, progress: RowsCallback) -> Any: ...

    def submit(self, predictions: Any, model_name: str) -> str: ...

    def model_performance(self, name: str) -> dict[str, float | None]: ...

    def set_stake(self, model_name: str, amount: float) -> float: ...


@dataclass(slots=True)
class SimulatedModel:
    name: str
    epochs: int
    final_loss: float


@dataclass(slots=True)
class SimulatedBackend:
    """Backend that fakes every stage with sleeps and random numbers.

    Used by ``--demo`` and whenever no real backend is configured. ``failures``
    maps a stage name (``download``, ``train``, ``predict``, ``submit``, ``stake``) to an
    exception that the stage raises instead of completing.
    """

    data_dir: Path = Path("./data")
    epochs: int = 100
    step_delay: float = 0.05
    rows: int = 5_000
    seed: int | None = None
    write_files: bool = False
    failures: dict[str, BaseException] = field(default_factory=dict)
    dataset_sizes: dict[str, int] = field(
        default_factory=lambda: {
            "train": 2_300 * 1024 * 1024,
            "validation": 1_100 * 1024 * 1024,
            "live": 12 * 1024 * 1024,
        }
    )
    _rng: random.Random = field(init=False, repr=False)
    _stakes: dict[str, float] = field(init=False, default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self._rng = random.Random(self.seed)

    def _maybe_fail(self, stage: str) -> None:
        fault = self.failures.get(stage)
        if fault is not None:
            raise fault

    def download(self, dataset: str, progress: DownloadCallback) -> Path:
        self._maybe_fail("download")
        total = self.dataset_sizes.get(dataset, 64 * 1024 * 1024)
        chunks = 20
        for chunk in range(1, chunks + 1):
            time.sleep(self.step_delay)
            progress(total * chunk // chunks, total)
        path = self.data_dir / f"{dataset}.parquet"
        if self.write_files:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch()
        logger.debug(f"Simulated download of {dataset} to {path}")
        return path

    def load_data(self) -> dict[str, int]:
        return {"rows": self.rows}

    def train(self, data: Any, on_epoch: EpochCallback) -> SimulatedModel:
        self._maybe_fail("train")
        loss = 0.25
        for epoch in range(1, self.epochs + 1):
            time.sleep(self.step_delay)
            loss = max(0.01, loss * (0.97 + self._rng.random() * 0.02))
            val_score = 0.02 + self._rng.random() * 0.01
            on_epoch(epoch, self.epochs, loss, val_score)
        return SimulatedModel(name="simulated", epochs=self.epochs, final_loss=loss)

    def predict(self, model: Any, progress: RowsCallback) -> list[float]:
        self._maybe_fail("predict")
        scores: list[float] = []
        batch = max(1, self.rows // 10)
        for start in range(0, self.rows, batch):
            time.sleep(self.step_delay)
            scores.extend(self._rng.random() for _ in range(min(batch, self.rows - start)))
            progress(len(scores), self.rows)
        if len(scores) != self.rows:
            raise DataValidationError(f"expected {self.rows} predictions, got {len(scores)}")
        return scores

    def submit(self, predictions: Any, model_name: str) -> str:
        self._maybe_fail("submit")
        time.sleep(self.step_delay)
        if not predictions:
            raise APIException("submission rejected: empty predictions")
        return f"sim-{model_name}-{self._rng.randrange(16**8):08x}"

    def model_performance(self, name: str) -> dict[str, float | None]:
        return {
            "corr": round(0.01 + self._rng.random() * 0.03, 4),
            "mmc": round(self._rng.random() * 0.01, 4),
            "fnc": round(self._rng.random() * 0.02, 4),
            "sharpe": round(0.5 + self._rng.random() * 1.5, 3),
            "stake": self._stakes.get(name, round(self._rng.random() * 100, 2)),
        }

    def set_stake(self, model_name: str, amount: float) -> float:
        self._maybe_fail("stake")
        time.sleep(self.step_delay)
        if amount < 0:
            raise DataValidationError(f"stake must not be negative, got {amount}")
        self._stakes[model_name] = round(amount, 2)
        return self._stakes[model_name]


def load_backend(target: str, **kwargs: Any) -> PipelineBackend:
    """Instantiate a backend from ``package.module:factory``."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Backend must be given as 'module:factory', got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    backend = factory(**kwargs)
    if not isinstance(backend, PipelineBackend):
        raise TypeError(f"{target} did not produce a PipelineBackend")
    logger.info(f"Loaded pipeline backend {target}")
    return backend
