"""
Хранилище статусов развёртывания.

Один писатель (задача оркестратора) и сколько угодно читателей (поллеры API).
Каждое изменение заменяет запись новым неизменяемым снимком,
поэтому читатель никогда не увидит "completed" вместе с ошибкой
или наполовину дописанную строку лога.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from .exceptions import InvalidStageTransition, NotFound

logger = logging.getLogger(__name__)


class DeploymentStage(str, Enum):
    """Стадии пайплайна развёртывания"""
    PENDING = "pending"
    INSTALLING_DOCKER = "installing_docker"
    PULLING_IMAGE = "pulling_image"
    CREATING_CONFIG = "creating_config"
    STARTING_XRAY = "starting_xray"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


# Порядок стадий успешного развёртывания
PIPELINE_ORDER: tuple[DeploymentStage, ...] = (
    DeploymentStage.PENDING,
    DeploymentStage.INSTALLING_DOCKER,
    DeploymentStage.PULLING_IMAGE,
    DeploymentStage.CREATING_CONFIG,
    DeploymentStage.STARTING_XRAY,
    DeploymentStage.COMPLETED,
)

TERMINAL_STAGES = frozenset({DeploymentStage.COMPLETED, DeploymentStage.FAILED})


def next_stage(stage: DeploymentStage) -> Optional[DeploymentStage]:
    """Следующая стадия по порядку (None для терминальных)"""
    if stage.is_terminal:
        return None
    return PIPELINE_ORDER[PIPELINE_ORDER.index(stage) + 1]


@dataclass(frozen=True)
class LogLine:
    timestamp: datetime
    text: str

    def __str__(self) -> str:
        return f"[{self.timestamp:%H:%M:%S}] {self.text}"


@dataclass(frozen=True)
class DeploymentSnapshot:
    """Неизменяемый снимок развёртывания"""
    id: str
    server_id: int
    stage: DeploymentStage
    started_at: datetime
    logs: tuple[LogLine, ...] = ()
    error: Optional[str] = None
    finished_at: Optional[datetime] = None
    stage_history: tuple[DeploymentStage, ...] = field(default=(DeploymentStage.PENDING,))

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    @property
    def log_text(self) -> str:
        return "\n".join(line.text for line in self.logs)


class DeploymentStatusStore:
    """
    Хранилище развёртываний в памяти процесса.

    Завершённые развёртывания удаляются через retention после
    перехода в терминальную стадию (по умолчанию 15 минут).
    """

    def __init__(
        self,
        retention: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.retention = retention
        self._clock = clock
        self._jobs: dict[str, DeploymentSnapshot] = {}
        self._lock = threading.Lock()

    def _lines(self, text: str) -> tuple[LogLine, ...]:
        now = self._clock()
        return tuple(LogLine(now, line.rstrip()) for line in text.splitlines() if line.strip())

    def _require(self, job_id: str) -> DeploymentSnapshot:
        snapshot = self._jobs.get(job_id)
        if snapshot is None:
            raise NotFound(f"Развёртывание {job_id} не найдено")
        return snapshot

    def _is_expired(self, snapshot: DeploymentSnapshot, now: datetime) -> bool:
        return snapshot.finished_at is not None and now - snapshot.finished_at >= self.retention

    # === ЧТЕНИЕ ===

    def get(self, job_id: str) -> DeploymentSnapshot:
        """
        Снимок развёртывания.

        Raises:
            NotFound: неизвестный id или запись уже очищена
        """
        with self._lock:
            snapshot = self._require(job_id)
            if self._is_expired(snapshot, self._clock()):
                del self._jobs[job_id]
                logger.info(f"[Deployment {job_id}] Очистка статуса развертывания.")
                raise NotFound(f"Развёртывание {job_id} не найдено")
            return snapshot

    def list_active(self) -> list[DeploymentSnapshot]:
        with self._lock:
            return [s for s in self._jobs.values() if not s.is_terminal]

    # === ЗАПИСЬ (только оркестратор) ===

    def create(self, server_id: int, message: Optional[str] = None) -> str:
        job_id = uuid.uuid4().hex
        now = self._clock()
        snapshot = DeploymentSnapshot(
            id=job_id,
            server_id=server_id,
            stage=DeploymentStage.PENDING,
            started_at=now,
            logs=self._lines(message or f"Начало развертывания (ID сервера: {server_id})..."),
        )
        with self._lock:
            self._jobs[job_id] = snapshot
        logger.info(f"[Deployment {job_id}] Создано развёртывание для сервера {server_id}")
        return job_id

    def append_log(self, job_id: str, line: str) -> bool:
        """Дописать строки в лог. После терминальной стадии — no-op."""
        with self._lock:
            snapshot = self._require(job_id)
            if snapshot.is_terminal:
                return False
            lines = self._lines(line)
            if lines:
                self._jobs[job_id] = replace(snapshot, logs=snapshot.logs + lines)
        return True

    def advance(self, job_id: str, stage: DeploymentStage, message: Optional[str] = None) -> bool:
        """
        Перейти на следующую стадию.

        Разрешён только переход на непосредственно следующую рабочую стадию;
        completed выставляется через complete(), failed — через fail().

        Returns:
            False, если развёртывание уже завершено

        Raises:
            InvalidStageTransition: пропуск стадии или откат назад
        """
        with self._lock:
            snapshot = self._require(job_id)
            if snapshot.is_terminal:
                return False

            expected = next_stage(snapshot.stage)
            if stage.is_terminal or stage != expected:
                raise InvalidStageTransition(
                    f"[Deployment {job_id}] Недопустимый переход {snapshot.stage.value} -> {stage.value}"
                )

            self._jobs[job_id] = replace(
                snapshot,
                stage=stage,
                stage_history=snapshot.stage_history + (stage,),
                logs=snapshot.logs + self._lines(message or f"--- {stage.value} ---"),
            )
        logger.info(f"[Deployment {job_id}] Стадия: {stage.value}")
        return True

    def complete(self, job_id: str, message: Optional[str] = None) -> bool:
        """
        Завершить успешно (только после последней рабочей стадии).

        Returns:
            False, если развёртывание уже завершено (например, watchdog выставил failed)
        """
        with self._lock:
            snapshot = self._require(job_id)
            if snapshot.is_terminal:
                return False

            if next_stage(snapshot.stage) != DeploymentStage.COMPLETED:
                raise InvalidStageTransition(
                    f"[Deployment {job_id}] Нельзя завершить развёртывание со стадии {snapshot.stage.value}"
                )

            self._jobs[job_id] = replace(
                snapshot,
                stage=DeploymentStage.COMPLETED,
                stage_history=snapshot.stage_history + (DeploymentStage.COMPLETED,),
                logs=snapshot.logs + self._lines(message or "--- Развертывание успешно завершено! ---"),
                finished_at=self._clock(),
            )
        logger.info(f"[Deployment {job_id}] ✅ Развертывание завершено")
        return True

    def fail(self, job_id: str, error: str) -> bool:
        """
        Перевести в failed с ошибкой.

        Returns:
            False, если развёртывание уже завершено
        """
        with self._lock:
            snapshot = self._require(job_id)
            if snapshot.is_terminal:
                return False

            self._jobs[job_id] = replace(
                snapshot,
                stage=DeploymentStage.FAILED,
                stage_history=snapshot.stage_history + (DeploymentStage.FAILED,),
                error=error,
                logs=snapshot.logs + self._lines(f"--- Ошибка развертывания: {error} ---"),
                finished_at=self._clock(),
            )
        logger.error(f"[Deployment {job_id}] ❌ Ошибка развертывания: {error}")
        return True

    # === ОЧИСТКА ===

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Удалить завершённые развёртывания старше retention"""
        now = now or self._clock()
        with self._lock:
            expired = [job_id for job_id, s in self._jobs.items() if self._is_expired(s, now)]
            for job_id in expired:
                del self._jobs[job_id]

        if expired:
            logger.info(f"🧹 Очищено статусов развертывания: {len(expired)}")
        return len(expired)
