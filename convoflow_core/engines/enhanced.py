"""Enhanced engine: interpreter plus enhanced processing modules."""

from typing import Dict, FrozenSet, Iterable, List, Optional

import structlog

from ..analysis.analyzer import CapabilityTag
from ..core.errors import EnhancedModuleError
from ..flow.graph import FlowGraph
from ..flow.interpreter import FlowInterpreter, StepResult
from ..flow.state import ConversationState, SessionKey
from ..resilience.timeout import TimeoutManager
from .base import Engine, EngineVariant
from .modules import DynamicNavigationModule, EnhancedCaptureModule, EnhancedModule


logger = structlog.get_logger()


# Navigation runs first so "back" on an input node is not captured as an answer
MODULE_ORDER = (CapabilityTag.DYNAMIC_NAVIGATION, CapabilityTag.ENHANCED_CAPTURE)


class EnhancedEngine(Engine):
    """
    Runs the selected enhanced modules around the interpreter.

    Every module hook runs under ``module_timeout``. Any failure is
    raised as EnhancedModuleError (or EnhancedModuleTimeout) for the
    fallback layer to handle.
    """

    variant = EngineVariant.ENHANCED

    def __init__(
        self,
        modules: Optional[Iterable[EnhancedModule]] = None,
        interpreter: Optional[FlowInterpreter] = None,
        module_timeout: float = 2.0,
        timeouts: Optional[TimeoutManager] = None,
    ):
        if modules is None:
            modules = [DynamicNavigationModule(), EnhancedCaptureModule()]
        self.modules: Dict[CapabilityTag, EnhancedModule] = {m.tag: m for m in modules}
        self.interpreter = interpreter or FlowInterpreter()
        self.module_timeout = module_timeout
        self.timeouts = timeouts or TimeoutManager(default_timeout=module_timeout)

    def select(self, tags: FrozenSet[CapabilityTag]) -> List[EnhancedModule]:
        return [self.modules[tag] for tag in MODULE_ORDER if tag in tags and tag in self.modules]

    async def step(
        self,
        graph: FlowGraph,
        state: Optional[ConversationState],
        inbound_text: Optional[str],
        session: Optional[SessionKey] = None,
        modules: FrozenSet[CapabilityTag] = frozenset(),
    ) -> StepResult:
        active = self.select(modules)
        result: Optional[StepResult] = None

        for module in active:
            result = await self._call(
                module,
                module.before_step(graph, state, inbound_text, self.interpreter),
            )
            if result is not None:
                break

        if result is None:
            try:
                result = self.interpreter.step(graph, state, inbound_text, session=session)
            except Exception as e:
                raise EnhancedModuleError("interpreter", str(e), cause=e) from e

        for module in active:
            await self._call(module, module.after_step(graph, state, inbound_text, result))

        logger.debug(
            "enhanced_step_completed",
            flow_id=graph.id,
            modules=[m.tag.value for m in active],
            degraded=result.degraded,
        )
        return result

    async def _call(self, module: EnhancedModule, awaitable):
        try:
            return await self.timeouts.execute(awaitable, module.tag.value, self.module_timeout)
        except EnhancedModuleError:
            raise
        except Exception as e:
            raise EnhancedModuleError(module.tag.value, str(e), cause=e) from e

    async def close(self) -> None:
        for module in self.modules.values():
            await module.close()
