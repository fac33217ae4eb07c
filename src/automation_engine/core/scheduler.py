"""
周期任务调度

PeriodicJobRunner 是外部周期任务框架的抽象，AsyncioJobRunner 为独立运行的
asyncio 实现（测试或无平台调度器时使用）。
"""
import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..config import EngineSettings
from ..exceptions import ConfigurationError
from ..models.execution import TriggerExecutionResult
from ..models.workflow import utcnow
from .triggers import TriggerEvaluator


logger = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[Any]]
Precondition = Callable[[], Any]


@dataclass
class PeriodicJob:
    """周期任务"""
    name: str
    interval_seconds: float
    callback: JobCallback
    precondition: Optional[Precondition] = None
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    last_run: Optional[datetime] = None


class PeriodicJobRunner(ABC):
    """周期任务运行器接口"""

    @abstractmethod
    def register(
        self,
        name: str,
        interval_seconds: float,
        callback: JobCallback,
        precondition: Optional[Precondition] = None
    ):
        """注册周期任务"""
        pass

    @abstractmethod
    async def start(self):
        pass

    @abstractmethod
    async def stop(self):
        pass


class AsyncioJobRunner(PeriodicJobRunner):
    """基于 asyncio 的周期任务运行器，每个任务一个协作式循环"""

    def __init__(self):
        self.jobs: Dict[str, PeriodicJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_event: Optional[asyncio.Event] = None

    def register(
        self,
        name: str,
        interval_seconds: float,
        callback: JobCallback,
        precondition: Optional[Precondition] = None
    ):
        if name in self.jobs:
            raise ConfigurationError(f"Job '{name}' is already registered")
        if interval_seconds <= 0:
            raise ConfigurationError(f"Job '{name}' interval must be positive, got {interval_seconds}")
        self.jobs[name] = PeriodicJob(name, interval_seconds, callback, precondition)
        if self._stop_event is not None and not self._stop_event.is_set():
            self._tasks[name] = asyncio.create_task(self._job_loop(self.jobs[name]))

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self):
        """启动所有任务"""
        if self._tasks:
            return
        self._stop_event = asyncio.Event()
        for job in self.jobs.values():
            self._tasks[job.name] = asyncio.create_task(self._job_loop(job))
        logger.info(f"Job runner started with {len(self.jobs)} jobs")

    async def stop(self):
        """停止所有任务并等待当前一轮结束"""
        if not self._tasks:
            return
        self._stop_event.set()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        logger.info("Job runner stopped")

    async def run_job(self, name: str) -> bool:
        """立即运行一次任务，返回是否实际执行"""
        return await self._tick(self.jobs[name])

    async def _job_loop(self, job: PeriodicJob):
        while not self._stop_event.is_set():
            await self._tick(job)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=job.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _tick(self, job: PeriodicJob) -> bool:
        if job.precondition is not None:
            try:
                allowed = job.precondition()
                if inspect.isawaitable(allowed):
                    allowed = await allowed
            except Exception as e:
                logger.error(f"Precondition of job '{job.name}' failed: {e}", exc_info=True)
                allowed = False
            if not allowed:
                job.skipped += 1
                logger.debug(f"Skipping job '{job.name}': precondition not met")
                return False

        job.last_run = utcnow()
        try:
            await job.callback()
            job.runs += 1
        except Exception as e:
            job.failures += 1
            logger.error(f"Job '{job.name}' failed: {e}", exc_info=True)
        return True


class TriggerScheduler:
    """
    触发器调度器

    注册两个周期任务：较短周期的触发器轮询，以及较长周期、带前置条件的维护任务。
    """

    POLL_JOB = "trigger_poll"
    MAINTENANCE_JOB = "maintenance"

    def __init__(
        self,
        evaluator: TriggerEvaluator,
        job_runner: Optional[PeriodicJobRunner] = None,
        maintenance_jobs: Sequence[JobCallback] = (),
        settings: Optional[EngineSettings] = None,
        precondition: Optional[Precondition] = None
    ):
        self.evaluator = evaluator
        self.job_runner = job_runner or AsyncioJobRunner()
        self.maintenance_jobs = list(maintenance_jobs)
        self.settings = settings or EngineSettings()
        self.last_results: List[TriggerExecutionResult] = []

        self.job_runner.register(self.POLL_JOB, self.settings.poll_interval_seconds, self.run_once)
        if self.maintenance_jobs:
            self.job_runner.register(
                self.MAINTENANCE_JOB,
                self.settings.maintenance_interval_seconds,
                self.run_maintenance,
                precondition
            )

    async def start(self):
        await self.job_runner.start()
        logger.info(f"Trigger scheduler started (poll every {self.settings.poll_interval_seconds}s)")

    async def stop(self):
        await self.job_runner.stop()
        logger.info("Trigger scheduler stopped")

    async def run_once(self) -> List[TriggerExecutionResult]:
        """执行一轮触发器评估"""
        results = await self.evaluator.check_all()
        self.last_results = results
        fired = [result for result in results if result.triggered]
        if fired:
            logger.info(f"Poll fired {len(fired)} of {len(results)} triggers")
        return results

    async def run_maintenance(self):
        """依次运行维护任务，单个任务失败不影响其余任务"""
        for job in self.maintenance_jobs:
            try:
                await job()
            except Exception as e:
                logger.error(f"Maintenance job {getattr(job, '__name__', job)} failed: {e}", exc_info=True)
