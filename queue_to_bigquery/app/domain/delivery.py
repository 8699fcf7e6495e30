"""An admitted message together with the flow-control credit it holds."""
from __future__ import annotations

from loguru import logger

from queue_to_bigquery.app.constants import DELIVERY_OUTCOME
from queue_to_bigquery.app.domain.flow_control import FlowController
from queue_to_bigquery.app.ports.incoming_message import IncomingMessage


class Delivery:
    """Resolves its message exactly once (ack or requeue) and then returns the credit.

    A second resolution is a programming error and raises RuntimeError. If the
    broker call itself fails (e.g. the channel dropped) the failure is logged and
    the credit is still returned: the broker redelivers unacked messages of a
    closed channel on its own.
    """

    def __init__(self, message: IncomingMessage, flow_controller: FlowController) -> None:
        self._message = message
        self._flow_controller = flow_controller
        self._outcome: str | None = None

    @property
    def message(self) -> IncomingMessage:
        return self._message

    @property
    def message_id(self) -> str | None:
        return self._message.message_id

    @property
    def outcome(self) -> str | None:
        return self._outcome

    @property
    def resolved(self) -> bool:
        return self._outcome is not None

    async def ack(self) -> None:
        await self._resolve(DELIVERY_OUTCOME.ACKED)

    async def requeue(self) -> None:
        await self._resolve(DELIVERY_OUTCOME.REQUEUED)

    async def _resolve(self, outcome: str) -> None:
        if self._outcome is not None:
            raise RuntimeError(
                f"message {self.message_id} already resolved as {self._outcome}"
            )
        self._outcome = outcome
        try:
            if outcome == DELIVERY_OUTCOME.ACKED:
                await self._message.ack()
            else:
                await self._message.requeue()
        except Exception as exc:
            logger.warning("{} failed for message {}: {}", outcome.lower(), self.message_id, exc)
        finally:
            self._flow_controller.release()
