"""
Pipeline orchestration: Download -> Train -> Predict -> Submit.

Each stage is single-flight through the progress tracker and runs its
blocking collaborator call in a worker thread. Stage faults are classified at
the stage boundary and never escape to the caller. When enabled, stages chain
into the next one: a download that leaves every required dataset in place
starts training after a short grace delay, training chains into prediction,
and prediction into submission.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
from typing import Any, Awaitable, Callable, Coroutine, Iterable

from loguru import logger

from .backend import PipelineBackend
from .exceptions import AlreadyActiveError, MissingPredictionsError, OperationCancelled
from .models import BodyView, EventLevel, OperationKind
from .state import DashboardState

StageWork = Callable[[int], Awaitable[Any]]


class PipelineOrchestrator:
    """Runs pipeline stages against a backend and reports into the dashboard state."""

    def __init__(
        self,
        state: DashboardState,
        backend: PipelineBackend,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        pause_poll: float = 0.1,
    ) -> None:
        self.state = state
        self.backend = backend
        self._config = state.config
        self._sleep = sleep
        self._pause_poll = pause_poll
        self._tasks: set[asyncio.Task[Any]] = set()
        self._data: Any | None = None
        self._model: Any | None = None

    # --- Task management ---------------------------------------------------

    def dispatch(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        """Schedule ``coro`` without waiting for it."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        logger.debug(f"Dispatched {name}")
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        fault = task.exception()
        if fault is not None:
            logger.opt(exception=fault).error(f"Task {task.get_name()} crashed: {fault}")
            self.state.record_error(fault, context=f"{task.get_name()} crashed")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every dispatched task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding stage tasks."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    # --- Public stages -----------------------------------------------------

    async def download(self, datasets: Iterable[str] | None = None) -> bool:
        return await self._download(datasets, chain=True)

    async def train(self) -> bool:
        return await self._train(chain=True)

    async def predict(self) -> bool:
        return await self._predict(chain=True)

    async def submit(self) -> bool:
        return await self._submit()

    async def run_pipeline(self) -> bool:
        """Run all four stages in order, stopping at the first one that fails."""
        self.state.add_event(EventLevel.INFO, "Starting full pipeline")
        stages: list[tuple[str, Callable[[], Awaitable[bool]]]] = [
            ("download", lambda: self._download(None, chain=False)),
            ("training", lambda: self._train(chain=False)),
            ("prediction", lambda: self._predict(chain=False)),
            ("submission", self._submit),
        ]
        for name, stage in stages:
            if self.state.cancel_requested():
                return False
            if not await stage():
                self.state.add_event(EventLevel.WARNING, f"Pipeline stopped at {name}")
                return False
        self.state.add_event(EventLevel.SUCCESS, "Pipeline complete")
        return True

    async def refresh_models(self) -> int:
        """Fetch performance for every configured model. Returns how many refreshed."""
        refreshed = 0
        names = self.state.mutate(lambda s: [model.name for model in s.models])
        for name in names:
            try:
                values = await asyncio.to_thread(self.backend.model_performance, name)
            except Exception as e:
                self.state.record_error(e, context=f"Refreshing {name}")
                continue
            known = {k: v for k, v in values.items() if k in ("corr", "mmc", "fnc", "sharpe", "stake", "model_type")}
            self.state.set_model_performance(name, **known)
            refreshed += 1
        if refreshed:
            self.state.request_render()
        logger.debug(f"Refreshed {refreshed}/{len(names)} models")
        return refreshed

    async def stake(self, amount: float, model_name: str | None = None) -> bool:
        """Set the stake of ``model_name`` (default: the selected model) to ``amount`` NMR."""
        if not math.isfinite(amount) or amount < 0:
            self.state.add_event(EventLevel.ERROR, f"Invalid stake amount: {amount}")
            return False
        name = model_name or self.state.mutate(lambda s: s.models[s.selected_model].name if s.models else None)
        if name is None:
            self.state.add_event(EventLevel.ERROR, "No models found to stake on")
            return False

        self.state.add_event(EventLevel.INFO, f"Setting stake for {name} to {amount:g} NMR")
        try:
            total = await asyncio.to_thread(self.backend.set_stake, name, amount)
        except Exception as e:
            self.state.record_error(e, context=f"Staking on {name}")
            return False

        def apply(state: DashboardState) -> None:
            for model in state.models:
                if model.name == name:
                    model.stake = total

        self.state.mutate(apply)
        self.state.add_event(EventLevel.SUCCESS, f"Stake for {name} is now {total:g} NMR")
        return True

    # --- Stage implementations ---------------------------------------------

    async def _download(self, datasets: Iterable[str] | None, *, chain: bool) -> bool:
        names = tuple(datasets or self._config.required_datasets)
        count = len(names)

        async def work(generation: int) -> None:
            self.state.add_event(EventLevel.INFO, f"Downloading {count} datasets: {', '.join(names)}")
            for index, name in enumerate(names):
                await self._checkpoint()
                callback = self._download_callback(generation, name, index, count)
                path = await asyncio.to_thread(self.backend.download, name, callback)
                self.state.mark_dataset_complete(name)
                self.state.update_progress(
                    OperationKind.DOWNLOAD,
                    (index + 1) / count * 100,
                    generation=generation,
                    description=f"Downloaded {name} ({index + 1}/{count})",
                )
                self.state.add_event(EventLevel.INFO, f"Downloaded {name} to {path}")

        ok, _ = await self._run_stage(
            OperationKind.DOWNLOAD,
            work,
            description=f"Downloading {names[0] if names else ''} (1/{count})",
            success=f"Downloaded {count} datasets",
            current=0,
            total=count,
            unit="datasets",
        )
        if ok and chain:
            await self._auto_train()
        return ok

    def _download_callback(self, generation: int, name: str, index: int, count: int):
        def on_progress(done: int, total: int) -> None:
            self.state.checkpoint()
            fraction = done / total if total else 0.0
            self.state.update_progress(
                OperationKind.DOWNLOAD,
                (index + fraction) / count * 100,
                generation=generation,
                description=f"Downloading {name} ({index + 1}/{count})",
                current=done,
                total=total or None,
                unit="bytes",
            )

        return on_progress

    async def _auto_train(self) -> None:
        if not self._config.auto_train_after_download:
            return
        if not self.state.take_completed_datasets(self._config.required_datasets):
            logger.debug("Auto-train skipped: not every required dataset has been downloaded")
            return
        delay = self._config.grace_delay
        self.state.add_event(EventLevel.INFO, f"All datasets ready, training starts in {delay:g}s")
        await self._sleep(delay)
        if self.state.cancel_requested():
            return
        await self._train(chain=True)

    async def _train(self, *, chain: bool) -> bool:
        model_name = self._current_model_name()
        epochs = self._config.default_epochs

        async def work(generation: int) -> Any:
            def reset(state: DashboardState) -> None:
                state.training.current_model = model_name
                state.training.epoch = 0
                state.training.total_epochs = epochs
                state.training.loss = None
                state.training.val_score = None
                state.training.loss_history.clear()
                if state.wizard is None:
                    state.view = BodyView.TRAINING
                    state.show_help = False

            self.state.mutate(reset)
            self.state.add_event(EventLevel.INFO, f"Training {model_name}")
            await self._checkpoint()
            if self._data is None:
                self._data = await asyncio.to_thread(self.backend.load_data)
            return await asyncio.to_thread(self.backend.train, self._data, self._epoch_callback(generation, model_name))

        ok, model = await self._run_stage(
            OperationKind.TRAINING,
            work,
            description=f"Training {model_name}",
            success=f"Training complete for {model_name}",
            current=0,
            total=epochs,
            unit="epochs",
        )
        if not ok:
            return False
        self._model = model
        if chain and self._config.auto_predict_after_train and not self.state.cancel_requested():
            await self._predict(chain=True)
        return True

    def _epoch_callback(self, generation: int, model_name: str):
        def on_epoch(epoch: int, total: int, loss: float, val_score: float | None = None) -> None:
            self.state.checkpoint()
            self.state.record_epoch(epoch, total, loss, val_score)
            self.state.update_progress(
                OperationKind.TRAINING,
                epoch / total * 100 if total else 0.0,
                generation=generation,
                description=f"Training {model_name}: epoch {epoch}/{total}",
                current=epoch,
                total=total,
            )

        return on_epoch

    async def _predict(self, *, chain: bool) -> bool:
        if self._model is None:
            self.state.add_event(EventLevel.WARNING, "No trained model available, run training first")
            return False
        model = self._model

        async def work(generation: int) -> Any:
            def on_rows(done: int, total: int) -> None:
                self.state.checkpoint()
                self.state.update_progress(
                    OperationKind.PREDICTION,
                    done / total * 100 if total else 0.0,
                    generation=generation,
                    current=done,
                    total=total,
                )

            await self._checkpoint()
            return await asyncio.to_thread(self.backend.predict, model, on_rows)

        ok, scores = await self._run_stage(
            OperationKind.PREDICTION,
            work,
            description="Generating predictions",
            success="Predictions generated",
            unit="rows",
        )
        if not ok:
            return False

        def store(state: DashboardState) -> None:
            state.predictions = scores

        self.state.mutate(store)
        if chain and self._config.auto_submit and not self.state.cancel_requested():
            await self._submit()
        return True

    async def _submit(self) -> bool:
        model_name = self._current_model_name()

        async def work(generation: int) -> str:
            predictions = self.state.mutate(lambda s: s.predictions)
            if predictions is None:
                raise MissingPredictionsError("No predictions available to submit, run prediction first")
            await self._checkpoint()
            submission_id = await asyncio.to_thread(self.backend.submit, predictions, model_name)
            self.state.update_progress(OperationKind.UPLOAD, 100.0, generation=generation)

            def store(state: DashboardState) -> None:
                state.last_submission_id = submission_id

            self.state.mutate(store)
            return submission_id

        ok, submission_id = await self._run_stage(
            OperationKind.UPLOAD,
            work,
            description=f"Submitting predictions for {model_name}",
            success=f"Submitted predictions for {model_name}",
        )
        if ok:
            logger.info(f"Submission id for {model_name}: {submission_id}")
        return ok

    # --- Internal helpers --------------------------------------------------

    async def _run_stage(
        self, kind: OperationKind, work: StageWork, *, description: str, success: str, **meta: Any
    ) -> tuple[bool, Any]:
        """Start ``kind``, run ``work`` and settle the progress slot however it ends."""
        try:
            generation = self.state.start_operation(kind, description=description, **meta)
        except AlreadyActiveError as e:
            self.state.add_event(EventLevel.WARNING, f"{kind.value.capitalize()} already in progress")
            logger.debug(str(e))
            return False, None

        try:
            result = await work(generation)
        except OperationCancelled:
            self.state.cancel_operation(kind)
            return False, None
        except asyncio.CancelledError:
            self.state.cancel_operation(kind)
            raise
        except Exception as e:
            self.state.fail_operation(kind, e)
            return False, None

        self.state.complete_operation(kind, success)
        return True, result

    async def _checkpoint(self) -> None:
        """Raise once the dashboard is stopping; wait while it is paused."""
        while True:
            if self.state.cancel_requested():
                raise OperationCancelled("dashboard is shutting down")
            if not self.state.mutate(lambda s: s.paused):
                return
            await asyncio.sleep(self._pause_poll)

    def _current_model_name(self) -> str:
        def pick(state: DashboardState) -> str:
            if 0 <= state.selected_model < len(state.models):
                return state.models[state.selected_model].name
            return state.config.models[0] if state.config.models else "default_model"

        return self.state.mutate(pick)
