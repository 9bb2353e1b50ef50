"""Pydantic schemas for the node/edge document."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LoomNodeData(BaseModel):
    """Payload of a node. ``text`` is the full accumulated string, not a diff."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    text: str = ""
    parent_id: str | None = Field(default=None, alias="parentId")
    child_ids: list[str] = Field(default_factory=list, alias="childIds")
    is_root: bool = Field(default=False, alias="isRoot")
    is_generating: bool = Field(default=False, alias="isGenerating")
    # char index where generated text begins (0 = none)
    generated_text_start: int = Field(default=0, alias="generatedTextStart")
    error: str | None = None


class LoomNode(BaseModel):
    """A node as stored and exported: an id plus its data payload.

    Presentation keys written by other tools (``type``, ``position``, ``width``...)
    are accepted on import and dropped.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    data: LoomNodeData

    def with_data(self, **changes: Any) -> "LoomNode":
        """Return a copy with ``data`` fields replaced; the original is untouched."""
        return self.model_copy(update={"data": self.data.model_copy(update=changes)})


class LoomEdge(BaseModel):
    """One parent -> child relationship."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    source: str
    target: str


class SerializedGraph(BaseModel):
    """The ``graph`` blob: whole-value snapshot of the document."""

    nodes: list[LoomNode] = Field(default_factory=list)
    edges: list[LoomEdge] = Field(default_factory=list)

    def to_json_dict(self) -> dict[str, Any]:
        """Wire form: nullable fields such as ``parentId`` stay as null; an unset ``error`` is omitted."""
        data = self.model_dump(by_alias=True)
        for node in data["nodes"]:
            if node["data"].get("error") is None:
                node["data"].pop("error", None)
        return data
