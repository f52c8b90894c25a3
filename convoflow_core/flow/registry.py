"""Template source and validated graph cache."""

import asyncio
import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog

from ..core.errors import MalformedGraph, UnknownTemplateError
from .graph import FlowGraph


logger = structlog.get_logger()


class TemplateSource(ABC):
    """Where template documents live. Storage is an external concern."""

    @abstractmethod
    async def fetch(self, template_id: str) -> Optional[Dict[str, Any]]:
        """Return the template document, or None if unknown."""
        pass

    @abstractmethod
    async def store(self, template_id: str, document: Dict[str, Any]) -> None:
        """Persist a template document."""
        pass


class InMemoryTemplateSource(TemplateSource):
    """Template documents kept in process memory."""

    def __init__(self, templates: Optional[Dict[str, Dict[str, Any]]] = None):
        self._templates: Dict[str, Dict[str, Any]] = dict(templates or {})

    async def fetch(self, template_id: str) -> Optional[Dict[str, Any]]:
        return self._templates.get(template_id)

    async def store(self, template_id: str, document: Dict[str, Any]) -> None:
        self._templates[template_id] = document


def template_version(document: Mapping[str, Any]) -> str:
    """Declared version, or a content hash when the document has none."""
    declared = document.get("version")
    if declared:
        return str(declared)
    payload = json.dumps(document, sort_keys=True, default=str)
    return hashlib.sha1(payload.encode()).hexdigest()[:12]


class GraphRegistry:
    """
    Loads templates once per version and shares the validated graph.

    A template that fails validation is never cached, so it cannot be
    activated.
    """

    def __init__(self, source: Optional[TemplateSource] = None):
        self.source = source or InMemoryTemplateSource()
        self._graphs: Dict[Tuple[str, str], FlowGraph] = {}
        self._active: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def register(
        self,
        template_id: str,
        document: Dict[str, Any],
        version: Optional[str] = None,
    ) -> FlowGraph:
        """
        Validate and activate a template.

        Raises:
            MalformedGraph: If validation fails
        """
        version = version or template_version(document)
        graph = FlowGraph.from_template(document, template_id=template_id, version=version)

        stored = dict(document)
        stored["version"] = version
        await self.source.store(template_id, stored)

        async with self._lock:
            self._graphs[(template_id, version)] = graph
            self._active[template_id] = version

        logger.info(
            "template_registered",
            template_id=template_id,
            version=version,
            node_count=len(graph),
        )
        return graph

    async def get(self, template_id: str) -> FlowGraph:
        """
        Get the current graph for a template.

        Raises:
            UnknownTemplateError: If the source has no such template
            MalformedGraph: If the stored template is invalid
        """
        document = await self.source.fetch(template_id)
        if document is None:
            raise UnknownTemplateError(template_id)

        version = template_version(document)
        cached = self._graphs.get((template_id, version))
        if cached is not None:
            return cached

        try:
            graph = FlowGraph.from_template(document, template_id=template_id, version=version)
        except MalformedGraph:
            logger.error("template_rejected", template_id=template_id, version=version)
            raise

        async with self._lock:
            previous = self._active.get(template_id)
            if previous and previous != version:
                self._graphs.pop((template_id, previous), None)
            self._graphs[(template_id, version)] = graph
            self._active[template_id] = version

        logger.info("template_loaded", template_id=template_id, version=version)
        return graph

    def active_version(self, template_id: str) -> Optional[str]:
        return self._active.get(template_id)
