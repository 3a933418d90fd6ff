"""Phase driver shared by every deployment mode."""

import threading
import time
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from edge_deploy.orchestrator.binding_recovery import BindingErrorRecovery, RecoveryResult
from edge_deploy.orchestrator.models import (
    AnyEvent,
    CRITICAL_PHASES,
    DeploymentContext,
    DomainDescriptor,
    ExecuteOptions,
    Phase,
    PhaseResult,
    PhaseStatus,
    new_deployment_id,
)
from edge_deploy.orchestrator.rollback import RollbackActionResult, RollbackStack
from edge_deploy.orchestrator.strategies.base import DeploymentStrategy
from edge_deploy.utils.errors import (
    CancelledError,
    ClassifiedError,
    DeploymentError,
    ErrorClassifier,
    ErrorContext,
    ErrorKind,
)
from edge_deploy.utils.logging import LogContext, get_logger
from edge_deploy.utils.retry import RetryDecision, RetryPolicy

logger = get_logger(__name__)


class PhaseListener:
    """Observer of pipeline progress. Override the callbacks you need."""

    def phase_started(self, ctx: DeploymentContext, phase: Phase) -> None:
        pass

    def phase_finished(self, ctx: DeploymentContext, result: PhaseResult) -> None:
        pass

    def retry_scheduled(
        self,
        ctx: DeploymentContext,
        phase: Phase,
        error: ClassifiedError,
        decision: RetryDecision
    ) -> None:
        pass

    def rollback_finished(self, ctx: DeploymentContext, results: List[RollbackActionResult]) -> None:
        pass


class PhaseOrchestrator:
    """Runs the six fixed phases for one domain against a strategy.

    The driver guarantees phase order, classifies every raised error, retries
    retryable kinds within the phase, routes deploy-time binding errors to
    ``BindingErrorRecovery`` and unwinds the rollback stack on an unrecovered
    failure. Strategies only implement the hooks.
    """

    def __init__(
        self,
        strategy: DeploymentStrategy,
        config: DomainDescriptor,
        classifier: Optional[ErrorClassifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        binding_recovery: Optional[BindingErrorRecovery] = None,
        listeners: Sequence[PhaseListener] = (),
        sleep: Callable[[float], None] = time.sleep,
        deployment_id: Optional[str] = None
    ):
        """Initialize the phase driver and create the run's context.

        Args:
            strategy: Mode strategy implementing the phase hooks
            config: Resolved domain
            classifier: Error classifier
            retry_policy: Retry policy (breaker state may be shared across domains)
            binding_recovery: Recovery used for deploy-time binding errors
            listeners: Progress observers
            sleep: Sleep function used for backoff
            deployment_id: Explicit id, generated when omitted
        """
        self.strategy = strategy
        self.classifier = classifier or ErrorClassifier()
        self.retry_policy = retry_policy or RetryPolicy()
        self.binding_recovery = binding_recovery
        self.listeners = list(listeners)
        self.sleep = sleep
        self.context = DeploymentContext(
            config=config,
            deployment_id=deployment_id or new_deployment_id(),
            rollback_stack=RollbackStack(self.classifier, owner=config.name),
        )
        self._started = False
        self._cancel_event = threading.Event()
        self.logger = get_logger(__name__)

    def cancel(self) -> None:
        """Request cancellation; checked between phases, retries and side effects."""
        self._cancel_event.set()

    def execute(self, options: Optional[ExecuteOptions] = None) -> DeploymentContext:
        """Run the pipeline.

        Args:
            options: Run options

        Returns:
            The run's DeploymentContext; rollback has already happened if needed

        Raises:
            DeploymentError: If called more than once
        """
        if self._started:
            raise DeploymentError("execute() can only be called once per orchestrator", retryable=False)
        self._started = True

        options = options or ExecuteOptions()
        ctx = self.context
        if options.cancel_event is not None:
            ctx.cancel_event = AnyEvent(options.cancel_event, self._cancel_event)
        else:
            ctx.cancel_event = self._cancel_event
        if options.timeout_seconds is not None:
            ctx.deadline = time.monotonic() + options.timeout_seconds
        ctx.start_time = datetime.utcnow()

        self.logger.info(
            f"Starting {self.strategy.mode.value} deployment {ctx.deployment_id} for {ctx.config.name}",
            extra=self._extra(),
        )

        halted = False
        for phase in Phase.ordered():
            if ctx.is_cancelled():
                ctx.cancelled = True
                self.logger.warning(f"Deployment cancelled before {phase.value}", extra=self._extra(phase))
                break

            ctx.current_phase = phase
            self._notify('phase_started', ctx, phase)

            if options.should_skip(phase):
                result = PhaseResult(phase, PhaseStatus.SKIPPED, {"reason": "skipped by configuration"})
                self.logger.info(f"Skipping {phase.value}", extra=self._extra(phase))
            else:
                result = self._run_phase(phase)

            ctx.record(result)
            self._notify('phase_finished', ctx, result)

            if result.is_failed():
                if ctx.cancelled:
                    halted = True
                    break
                if not options.continue_on_error or phase in CRITICAL_PHASES:
                    self.logger.error(f"Pipeline halted at {phase.value}", extra=self._extra(phase))
                    halted = True
                    break
                self.logger.warning(f"Continuing after failed {phase.value}", extra=self._extra(phase))

        ctx.current_phase = None
        if halted or ctx.cancelled:
            if options.rollback_on_failure:
                self.rollback()
            else:
                self.logger.warning(
                    f"Rollback disabled; leaving {len(ctx.rollback_stack)} action(s) in place",
                    extra=self._extra(),
                )
        elif ctx.failed_phase is None and not options.retain_rollback:
            ctx.rollback_stack.discard()

        ctx.end_time = datetime.utcnow()
        summary = ctx.summary()
        self.logger.info(
            f"Deployment {ctx.deployment_id} finished: {summary['finalStatus']} "
            f"({summary['completed']} succeeded, {summary['failed']} failed, "
            f"{summary['skipped']} skipped) in {summary['durationMs']}ms",
            extra=self._extra(),
        )
        return ctx

    def rollback(self) -> List[RollbackActionResult]:
        """Unwind every registered action. Safe to call again; later calls find an empty stack."""
        ctx = self.context
        results = ctx.rollback_stack.unwind_all(ctx)
        ctx.rollback_performed = True
        ctx.rollback_results.extend(results)
        self._notify('rollback_finished', ctx, results)
        return results

    def _run_phase(self, phase: Phase) -> PhaseResult:
        ctx = self.context
        with LogContext(deployment_id=ctx.deployment_id, domain=ctx.config.name, phase=phase.value):
            return self._attempt_phase(phase)

    def _attempt_phase(self, phase: Phase) -> PhaseResult:
        ctx = self.context
        hook = getattr(self.strategy, phase.hook_name)
        start_time = datetime.utcnow()
        attempt = 0
        recovery_attempted = False
        recoveries: List[RecoveryResult] = []
        failed_kinds = set()

        while True:
            try:
                data = dict(hook(ctx) or {})
            except Exception as e:
                classified = self.classifier.classify(
                    e,
                    ErrorContext(
                        deployment_id=ctx.deployment_id,
                        domain=ctx.config.name,
                        phase=phase.value,
                        operation=phase.hook_name,
                    ),
                )
                ctx.errors.append(classified)
                self.classifier.log_error(classified)
                failed_kinds.add(classified.kind)

                if classified.kind == ErrorKind.CANCELLED:
                    ctx.cancelled = True
                    return self._failed(phase, classified, attempt, start_time, recoveries)

                if self._should_recover(phase, classified, recovery_attempted):
                    recovery_attempted = True
                    outcome = self.binding_recovery.recover(e, ctx.config, ctx.rollback_stack)
                    recoveries.append(outcome)
                    if outcome.retry:
                        self.logger.info(
                            f"Binding recovered ({outcome.action}); re-attempting {phase.value}",
                            extra=self._extra(phase),
                        )
                        attempt += 1
                        continue
                    self.logger.warning(
                        f"Binding recovery did not enable a retry: {outcome.action}",
                        extra=self._extra(phase),
                    )

                decision = self.retry_policy.should_retry(classified, attempt)
                if not decision.retry:
                    self.logger.debug(f"Not retrying {phase.value}: {decision.reason}", extra=self._extra(phase))
                    return self._failed(phase, classified, attempt, start_time, recoveries)

                self._notify('retry_scheduled', ctx, phase, classified, decision)
                self.logger.warning(
                    f"Attempt {attempt + 1} of {phase.value} failed ({classified.kind.value}). "
                    f"Retrying in {decision.delay_ms}ms...",
                    extra=self._extra(phase),
                )
                if not self._wait(decision.delay_ms):
                    cancelled = self.classifier.classify(
                        CancelledError(f"Deployment of {ctx.config.name} cancelled during retry backoff"),
                        ErrorContext(deployment_id=ctx.deployment_id, domain=ctx.config.name, phase=phase.value),
                    )
                    ctx.errors.append(cancelled)
                    ctx.cancelled = True
                    return self._failed(phase, cancelled, attempt, start_time, recoveries)
                attempt += 1
                continue

            for kind in failed_kinds:
                self.retry_policy.record_success(kind)
            if recoveries:
                data.setdefault("binding_recovery", [self._recovery_dict(r) for r in recoveries])
            return PhaseResult(
                phase=phase,
                status=PhaseStatus.SUCCEEDED,
                data=data,
                attempts=attempt + 1,
                duration_ms=self._elapsed_ms(start_time),
            )

    def _should_recover(self, phase: Phase, classified: ClassifiedError, already_attempted: bool) -> bool:
        return (
            phase == Phase.DEPLOY
            and classified.kind == ErrorKind.DATABASE_BINDING
            and self.binding_recovery is not None
            and self.strategy.supports_binding_recovery
            and not already_attempted
        )

    def _wait(self, delay_ms: int) -> bool:
        """Sleep for the backoff delay. Returns False when cancelled or past the deadline."""
        ctx = self.context
        delay = delay_ms / 1000.0
        if ctx.deadline is not None and time.monotonic() + delay >= ctx.deadline:
            return False
        if ctx.is_cancelled():
            return False
        self.sleep(delay)
        return not ctx.is_cancelled()

    def _failed(
        self,
        phase: Phase,
        error: ClassifiedError,
        attempt: int,
        start_time: datetime,
        recoveries: List[RecoveryResult]
    ) -> PhaseResult:
        data = {}
        if isinstance(error.cause, DeploymentError) and error.cause.details:
            data.update(error.cause.details)
        if recoveries:
            data["binding_recovery"] = [self._recovery_dict(r) for r in recoveries]
        return PhaseResult(
            phase=phase,
            status=PhaseStatus.FAILED,
            data=data,
            error=error,
            attempts=attempt + 1,
            duration_ms=self._elapsed_ms(start_time),
        )

    def _notify(self, callback: str, *args) -> None:
        for listener in self.listeners:
            try:
                getattr(listener, callback)(*args)
            except Exception:
                self.logger.exception(f"Listener {type(listener).__name__}.{callback} failed")

    def _extra(self, phase: Optional[Phase] = None):
        extra = {'deployment_id': self.context.deployment_id, 'domain': self.context.config.name}
        if phase is not None:
            extra['phase'] = phase.value
        return extra

    @staticmethod
    def _recovery_dict(result: RecoveryResult):
        return {
            "handled": result.handled,
            "retry": result.retry,
            "action": result.action,
            "backupPath": str(result.backup_path) if result.backup_path else None,
            "databaseName": result.database_name,
        }

    @staticmethod
    def _elapsed_ms(start_time: datetime) -> int:
        return int((datetime.utcnow() - start_time).total_seconds() * 1000)

