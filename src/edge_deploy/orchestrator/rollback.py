"""Rollback stack for undoing completed side effects."""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

from edge_deploy.utils.errors import ClassifiedError, ErrorClassifier, ErrorContext
from edge_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RollbackAction:
    """A reversible record of one completed side effect."""

    type: str
    description: str
    undo: Callable[[Any], Any] = field(compare=False, repr=False)


@dataclass(frozen=True)
class RollbackActionResult:
    """Outcome of invoking one undo."""

    type: str
    description: str
    succeeded: bool
    error: Optional[ClassifiedError] = None
    duration: float = 0.0  # seconds

    def to_dict(self):
        return {
            'type': self.type,
            'description': self.description,
            'succeeded': self.succeeded,
            'error': self.error.message if self.error else None,
        }


class RollbackStack:
    """LIFO log of completed actions.

    ``unwind_all`` attempts every registered undo exactly once, most recent
    first. An undo failure is classified, logged and recorded; it never stops
    the unwind and is never re-raised.
    """

    def __init__(self, classifier: Optional[ErrorClassifier] = None, owner: Optional[str] = None):
        """Initialize rollback stack.

        Args:
            classifier: Classifier for undo failures
            owner: Label used in log messages (usually the domain)
        """
        self.classifier = classifier or ErrorClassifier()
        self.owner = owner
        self._actions: List[RollbackAction] = []
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def push(self, action: RollbackAction) -> None:
        with self._lock:
            self._actions.append(action)
        self.logger.debug(f"Registered rollback action {action.type}: {action.description}")

    def __len__(self) -> int:
        with self._lock:
            return len(self._actions)

    def is_empty(self) -> bool:
        return len(self) == 0

    def peek_types(self) -> List[str]:
        """Action types, most recent first."""
        with self._lock:
            return [action.type for action in reversed(self._actions)]

    def discard(self) -> int:
        """Drop all actions after a successful deployment.

        Returns:
            Number of actions dropped
        """
        with self._lock:
            count = len(self._actions)
            self._actions.clear()
        if count:
            self.logger.debug(f"Discarded {count} rollback action(s)")
        return count

    def unwind_all(self, ctx: Any = None) -> List[RollbackActionResult]:
        """Pop and invoke every action in LIFO order.

        Args:
            ctx: Deployment context handed to each undo

        Returns:
            One result per action, in invocation order
        """
        results: List[RollbackActionResult] = []
        total = len(self)
        if total:
            self.logger.info(f"Rolling back {total} action(s)" + (f" for {self.owner}" if self.owner else ""))

        while True:
            with self._lock:
                if not self._actions:
                    break
                action = self._actions.pop()

            start_time = datetime.utcnow()
            try:
                action.undo(ctx)
            except Exception as e:
                duration = (datetime.utcnow() - start_time).total_seconds()
                classified = self.classifier.classify_rollback_failure(
                    e,
                    action.type,
                    ErrorContext(
                        domain=self.owner,
                        deployment_id=getattr(ctx, 'deployment_id', None),
                    ),
                )
                self.classifier.log_error(classified)
                results.append(RollbackActionResult(action.type, action.description, False, classified, duration))
                continue

            duration = (datetime.utcnow() - start_time).total_seconds()
            self.logger.info(f"Rolled back {action.type}: {action.description}")
            results.append(RollbackActionResult(action.type, action.description, True, None, duration))

        failed = sum(1 for result in results if not result.succeeded)
        if failed:
            self.logger.warning(f"Rollback completed with {failed}/{len(results)} failed action(s)")
        elif results:
            self.logger.info(f"Rollback completed: {len(results)} action(s) undone")
        return results
