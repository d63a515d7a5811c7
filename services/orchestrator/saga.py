import structlog

from shared.observability import ecomm_saga_compensation_total

logger = structlog.get_logger(__name__)


class SagaStep:
    def __init__(self, name, action, compensation=None):
        self.name = name
        self.action = action
        self.compensation = compensation


class SagaOrchestrator:
    def __init__(self, name: str = "saga"):
        self.name = name
        self.steps = []

    def add_step(self, name: str, action, compensation=None):
        """Builder pattern to add a step and its rollback compensation."""
        self.steps.append(SagaStep(name, action, compensation))
        return self

    async def execute(self, ctx: dict) -> dict:
        """Runs steps in order. On the first failure, compensates what already ran and re-raises."""
        executed_steps = []
        for step in self.steps:
            try:
                await step.action(ctx)
            except Exception as exc:
                logger.error("saga_step_failed", saga=self.name, step=step.name, error=str(exc))
                ctx["failed_step"] = step.name
                await self._rollback(executed_steps, ctx)
                raise
            executed_steps.append(step)
        ctx["completed_steps"] = [step.name for step in executed_steps]
        return ctx

    async def _rollback(self, executed_steps: list, ctx: dict):
        """Executes compensations in reverse order. Wraps each in a try/except."""
        logger.info("saga_rollback_started", saga=self.name, steps=len(executed_steps))
        for step in reversed(executed_steps):
            if not step.compensation:
                continue
            try:
                await step.compensation(ctx)
                logger.info("saga_compensation_succeeded", saga=self.name, step=step.name)
                ecomm_saga_compensation_total.labels(step_name=step.name).inc()
            except Exception as ce:
                # A failing compensation MUST NOT block other compensations
                logger.critical(
                    "saga_compensation_failed",
                    saga=self.name,
                    step=step.name,
                    error=str(ce),
                    action="manual intervention may be required",
                )
