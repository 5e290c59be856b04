from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import replace

import anyio

from .backend import api
from .backend.client import Backend, BackendCallError
from .config import DEFAULT_PROBE_TIMEOUT_S
from .errors import ChannelUnavailable
from .logging import get_logger
from .model import ChannelInstance, VerifiedStatus

logger = get_logger(__name__)

__all__ = [
    "ChannelRegistry",
    "ProbeBoard",
]


class ProbeBoard:
    """Per-instance verdicts for the current session; ``None`` means checking."""

    def __init__(self) -> None:
        self._verdicts: dict[str, VerifiedStatus | None] = {}

    def start(self, instance_ids: Iterable[str]) -> None:
        for instance_id in instance_ids:
            self._verdicts[instance_id] = None

    def resolve(self, instance_id: str, status: VerifiedStatus) -> None:
        self._verdicts[instance_id] = status

    def is_checking(self, instance_id: str) -> bool:
        return instance_id in self._verdicts and self._verdicts[instance_id] is None

    def status(self, instance_id: str) -> VerifiedStatus | None:
        return self._verdicts.get(instance_id)

    def snapshot(self) -> dict[str, VerifiedStatus | None]:
        return dict(self._verdicts)


class ChannelRegistry:
    def __init__(
        self,
        backend: Backend,
        *,
        probe_timeout_s: float = DEFAULT_PROBE_TIMEOUT_S,
    ) -> None:
        self._backend = backend
        self._probe_timeout_s = probe_timeout_s
        self._instances: dict[str, ChannelInstance] = {}
        self.board = ProbeBoard()

    def get(self, instance_id: str) -> ChannelInstance | None:
        return self._instances.get(instance_id)

    def instances(self) -> list[ChannelInstance]:
        return list(self._instances.values())

    async def list_instances(self, organization_id: str) -> list[ChannelInstance]:
        instances = await api.fetch_instances(self._backend, organization_id)
        self._instances = {instance.id: instance for instance in instances}
        return instances

    async def verify_connectivity(self, instance: ChannelInstance) -> VerifiedStatus:
        """Probe one instance; only an explicit negative answer is DISCONNECTED."""
        response = None
        with anyio.move_on_after(self._probe_timeout_s):
            try:
                response = await api.probe_instance(self._backend, instance)
            except BackendCallError as exc:
                logger.warning(
                    "channels.probe_failed",
                    instance_id=instance.id,
                    error=exc.detail,
                    status=exc.status,
                )
                return VerifiedStatus.UNKNOWN
        if response is None:
            logger.warning(
                "channels.probe_timeout",
                instance_id=instance.id,
                timeout_s=self._probe_timeout_s,
            )
            return VerifiedStatus.UNKNOWN
        if response.is_connected is True:
            return VerifiedStatus.CONNECTED
        if response.is_connected is False:
            return VerifiedStatus.DISCONNECTED
        logger.info(
            "channels.probe_inconclusive",
            instance_id=instance.id,
            status=response.status,
            error=response.error,
        )
        return VerifiedStatus.UNKNOWN

    async def _probe_into_board(
        self,
        instance: ChannelInstance,
        on_result: Callable[[ChannelInstance], None] | None,
    ) -> None:
        status = await self.verify_connectivity(instance)
        self.board.resolve(instance.id, status)
        verified = replace(instance, verified=status)
        if instance.id in self._instances:
            self._instances[instance.id] = verified
        if on_result is not None:
            on_result(verified)

    async def verify_all(
        self,
        instances: Iterable[ChannelInstance],
        *,
        on_result: Callable[[ChannelInstance], None] | None = None,
    ) -> dict[str, VerifiedStatus | None]:
        pending = list(instances)
        self.board.start(instance.id for instance in pending)
        async with anyio.create_task_group() as tg:
            for instance in pending:
                tg.start_soon(self._probe_into_board, instance, on_result)
        return {instance.id: self.board.status(instance.id) for instance in pending}

    async def ensure_sendable(self, instance: ChannelInstance) -> VerifiedStatus:
        self.board.start([instance.id])
        status = await self.verify_connectivity(instance)
        self.board.resolve(instance.id, status)
        if status is VerifiedStatus.DISCONNECTED:
            raise ChannelUnavailable(instance.label)
        return status
