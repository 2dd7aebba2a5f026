from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

KNOWN_PROTOCOLS = ("ws", "sse", "sse_v1", "sse_v2")


class DependencyTypes(BaseModel):
    continuous: bool = False
    generator: bool = False

    model_config = {"extra": "allow"}


class Dependency(BaseModel):
    """Metadata of one callable job exposed by the service.

    The position of the dependency in ``ServiceConfig.dependencies`` is the
    job's function index.
    """

    api_name: Optional[str] = None
    queue: Optional[bool] = Field(
        default=None,
        description="Per-job queue override; None defers to the service-wide flag",
    )
    types: DependencyTypes = Field(default_factory=DependencyTypes)
    outputs: List[int] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class Component(BaseModel):
    """UI component entry of the descriptor; only ``id`` and ``props`` are read."""

    id: int
    props: Optional[Dict[str, Any]] = None

    model_config = {"extra": "allow"}


class ServiceConfig(BaseModel):
    """Service descriptor returned by ``GET {base_url}/config``.

    Only the fields the engine reads are typed; everything else is kept as
    extra data and never interpreted.
    """

    root: str = ""
    path: Optional[str] = ""
    protocol: Optional[str] = "ws"
    version: Optional[str] = None
    enable_queue: Optional[bool] = True
    auth_required: bool = False
    dependencies: List[Dependency] = Field(default_factory=list)
    components: List[Component] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def dependency(self, fn_index: int) -> Optional[Dependency]:
        if 0 <= fn_index < len(self.dependencies):
            return self.dependencies[fn_index]
        return None

    def component(self, component_id: int) -> Optional[Component]:
        return next((c for c in self.components if c.id == component_id), None)
