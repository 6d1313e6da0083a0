"""
Dynamo run-request conversion

A Dynamo graph (.dyn) is JSON. The activity does not execute the graph file
directly; it reads a run request that embeds the graph text verbatim:

    {"target": {"type": "JsonGraphTarget", "contents": "<graph text>"}, "inputs": []}

The graph is validated before it is wrapped. Nothing here touches the network.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Tuple, Union

from .errors import InvalidInputError
from .settings import DYN_FILE, RVT_FILE


@dataclass
class GraphSummary:
    uuid: str
    name: str
    description: str
    is_custom_node: bool
    nodes_count: int
    connectors_count: int
    view_scale: Any = "N/A"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uuid": self.uuid,
            "name": self.name,
            "description": self.description,
            "is_custom_node": self.is_custom_node,
            "nodes_count": self.nodes_count,
            "connectors_count": self.connectors_count,
            "view_scale": self.view_scale,
        }


def require_filename(filename: str, expected: str) -> None:
    """
    Reject any name other than exactly ``expected``.

    Raises:
        InvalidInputError: name differs (case and extension included)
    """
    if filename != expected:
        raise InvalidInputError(
            f"File must be named exactly '{expected}'",
            details=f"Received '{filename}'. Rename the file to '{expected}' and try again.",
        )


def require_dynamo_filename(filename: str) -> None:
    require_filename(filename, DYN_FILE)


def require_model_filename(filename: str) -> None:
    require_filename(filename, RVT_FILE)


def _decode(content: Union[str, bytes]) -> str:
    if isinstance(content, bytes):
        try:
            return content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise InvalidInputError(
                "Invalid Dynamo file format",
                details="The uploaded file is not a valid Dynamo (.dyn) JSON file",
            ) from e
    return content


def parse_graph(content: Union[str, bytes]) -> Tuple[str, Dict[str, Any]]:
    """
    Parse and validate graph text.

    Returns:
        (text, parsed graph)

    Raises:
        InvalidInputError: not JSON, or missing Uuid / Nodes
    """
    text = _decode(content)
    try:
        graph = json.loads(text)
    except ValueError as e:
        raise InvalidInputError(
            "Invalid Dynamo file format",
            details="The uploaded file is not a valid Dynamo (.dyn) JSON file",
        ) from e
    # An empty node list is still a graph
    if not isinstance(graph, dict) or not graph.get("Uuid") or graph.get("Nodes") is None:
        raise InvalidInputError(
            "Invalid Dynamo file structure",
            details="The file does not contain the required Dynamo properties (Uuid, Nodes)",
        )
    return text, graph


def summarize(graph: Dict[str, Any]) -> GraphSummary:
    view = graph.get("View") or {}
    return GraphSummary(
        uuid=graph["Uuid"],
        name=graph.get("Name") or "Unnamed Graph",
        description=graph.get("Description") or "No description",
        is_custom_node=bool(graph.get("IsCustomNode")),
        nodes_count=len(graph.get("Nodes") or []),
        connectors_count=len(graph.get("Connectors") or []),
        view_scale=view.get("Zoom", "N/A") if isinstance(view, dict) else "N/A",
    )


def to_run_request(content: Union[str, bytes]) -> Tuple[Dict[str, Any], GraphSummary]:
    """Wrap a validated graph in the run request the activity consumes."""
    text, graph = parse_graph(content)
    run_request = {
        "target": {"type": "JsonGraphTarget", "contents": text},
        "inputs": [],
    }
    return run_request, summarize(graph)


def to_legacy_run_request(content: Union[str, bytes]) -> Dict[str, Any]:
    """Older ``{"script": ...}`` wrapper. The graph is not validated."""
    return {"script": _decode(content)}


def dumps(run_request: Dict[str, Any]) -> str:
    return json.dumps(run_request, indent=2)
