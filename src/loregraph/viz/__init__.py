"""Graph export for external rendering and exchange.

Public API:
- export_json: the graph document, loadable again with import_graph
- export_dot: Graphviz DOT
- export_mermaid: Mermaid flowchart
- write_export: render in a named format and write it to disk
"""

from .export import (
    EXPORT_FORMATS,
    export_dot,
    export_json,
    export_mermaid,
    write_export,
)

__all__ = [
    "EXPORT_FORMATS",
    "export_dot",
    "export_json",
    "export_mermaid",
    "write_export",
]
