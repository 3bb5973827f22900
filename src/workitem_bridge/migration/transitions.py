"""Workflow transition control.

Target platforms commonly refuse to jump straight from the creation state
to a terminal one, and some accept the update without error but leave the
state unchanged. The controller walks a record through the intermediate
states of a configurable transition table and re-reads the record after
every step, so a silently rejected transition is reported instead of being
mistaken for success.
"""

from collections.abc import Mapping, Sequence

from workitem_bridge.client.exceptions import RETRYABLE_ERRORS, APIError, NetworkError
from workitem_bridge.client.protocols import TargetConnector
from workitem_bridge.config import WorkflowConfig
from workitem_bridge.models import TransitionPlan, TransitionResult
from workitem_bridge.utils.logging import get_logger

logger = get_logger(__name__)

STATE_FIELD = "System.State"

_STATE_ALIASES = {
    "defined": "New",
    "open": "New",
    "inprogress": "Active",
    "in-progress": "Active",
    "progress": "Active",
    "completed": "Closed",
    "closed": "Closed",
    "resolved": "Closed",
    "done": "Closed",
}


def normalize_state(state: str | None) -> str | None:
    """Translate a raw source workflow state into the target vocabulary.

    Unknown states are returned unchanged.
    """
    if not state:
        return state
    key = state.strip().lower().replace(" ", "")
    return _STATE_ALIASES.get(key, state)


def _same_state(a: str | None, b: str | None) -> bool:
    return (a or "").strip().lower() == (b or "").strip().lower()


class TransitionTable:
    """Desired state -> ordered list of states to apply to reach it."""

    def __init__(self, paths: Mapping[str, Sequence[str]] | None = None):
        self._paths = {state.lower(): tuple(steps) for state, steps in (paths or {}).items()}

    @classmethod
    def from_config(cls, config: WorkflowConfig) -> "TransitionTable":
        return cls(config.transitions)

    def path_for(self, desired_state: str) -> tuple[str, ...] | None:
        return self._paths.get(desired_state.lower())

    def __contains__(self, desired_state: object) -> bool:
        return isinstance(desired_state, str) and desired_state.lower() in self._paths

    def __len__(self) -> int:
        return len(self._paths)


class WorkflowTransitionController:
    """Drives target records to a desired workflow state.

    Only ``System.State`` is written per step. Companion fields such as
    ``System.Reason`` are left for the platform to default.

    Args:
        target: Target connector
        table: Transition paths for the target platform
        initial_state: State every record is created in
        bypass_rules: Send state updates with rule bypass enabled
    """

    def __init__(
        self,
        target: TargetConnector,
        table: TransitionTable | None = None,
        initial_state: str = "New",
        bypass_rules: bool = False,
    ):
        self.target = target
        self.table = table or TransitionTable()
        self.initial_state = initial_state
        self.bypass_rules = bypass_rules

    def plan(self, current_state: str | None, desired_state: str) -> TransitionPlan:
        """Compute the states to apply to move from ``current_state`` to ``desired_state``.

        Steps equal to the current state are dropped from the front of the
        path. An empty plan means the record is already there.
        """
        if _same_state(current_state, desired_state):
            return TransitionPlan(target_state=desired_state, steps=())

        path = self.table.path_for(desired_state)
        if path is None:
            return TransitionPlan(target_state=desired_state, steps=(desired_state,), direct=True)

        steps = list(path)
        while steps and _same_state(steps[0], current_state):
            steps.pop(0)
        return TransitionPlan(target_state=desired_state, steps=tuple(steps))

    async def _current_state(self, target_id: int) -> str | None:
        return (await self.target.get_record(target_id)).state

    def _interrupted(
        self,
        target_id: int,
        desired_state: str,
        index: int,
        step: str | None,
        observed: str | None,
        error: Exception,
    ) -> TransitionResult:
        transient = isinstance(error, RETRYABLE_ERRORS)
        logger.warning(
            "transition_interrupted",
            target_id=target_id,
            step=index,
            expected_state=step,
            desired_state=desired_state,
            transient=transient,
            error=str(error),
        )
        return TransitionResult(
            success=False,
            target_state=desired_state,
            final_state=observed,
            failed_step=index or None,
            expected_state=step,
            actual_state=observed,
            message=f"Transition to '{desired_state}' interrupted at step {index}: {error}",
            transient=transient,
        )

    async def transition(
        self, target_id: int, desired_state: str, current_state: str | None = None
    ) -> TransitionResult:
        """Move ``target_id`` into ``desired_state``, verifying each hop.

        Args:
            target_id: Target record id
            desired_state: Workflow state to reach
            current_state: Known current state; fetched when omitted

        Returns:
            TransitionResult; on failure it names the failing step together
            with the expected and actual state. Connector errors are
            returned as failed results, flagged ``transient`` when retryable
        """
        if current_state is None:
            try:
                current_state = await self._current_state(target_id)
            except (APIError, NetworkError) as e:
                return self._interrupted(target_id, desired_state, 0, None, None, e)

        plan = self.plan(current_state, desired_state)
        if not plan.steps:
            return TransitionResult(
                success=True, target_state=desired_state, final_state=current_state
            )

        logger.debug(
            "transition_planned",
            target_id=target_id,
            current_state=current_state,
            desired_state=desired_state,
            steps=list(plan.steps),
            direct=plan.direct,
        )

        observed = current_state
        for index, step in enumerate(plan.steps, start=1):
            if _same_state(step, observed):
                continue

            try:
                await self.target.patch_fields(
                    target_id, {STATE_FIELD: step}, bypass_rules=self.bypass_rules
                )
                observed = await self._current_state(target_id)
            except (APIError, NetworkError) as e:
                return self._interrupted(target_id, desired_state, index, step, observed, e)

            if not _same_state(observed, step):
                logger.warning(
                    "transition_step_failed",
                    target_id=target_id,
                    step=index,
                    expected_state=step,
                    actual_state=observed,
                    desired_state=desired_state,
                )
                return TransitionResult(
                    success=False,
                    target_state=desired_state,
                    final_state=observed,
                    failed_step=index,
                    expected_state=step,
                    actual_state=observed,
                    message=(
                        f"Transition to '{desired_state}' failed at step {index}: "
                        f"expected '{step}', found '{observed}'"
                    ),
                )

        if not _same_state(observed, desired_state):
            return TransitionResult(
                success=False,
                target_state=desired_state,
                final_state=observed,
                expected_state=desired_state,
                actual_state=observed,
                message=f"Transition ended in '{observed}' instead of '{desired_state}'",
            )

        logger.info(
            "transition_completed",
            target_id=target_id,
            from_state=current_state,
            to_state=desired_state,
        )
        return TransitionResult(success=True, target_state=desired_state, final_state=observed)
