"""Section structure as a flat arena of nodes.

The structure-analysis response is a nested tree; it is flattened here into
``SectionNode`` records with stable IDs and parent back-references, with line
ranges clamped to the markdown it describes.
"""

from typing import List, Optional, Set

from factcheck.schemas.validation import DocumentStructure, PageDraft, SectionNode, StructureResponse, StructureSectionItem

DEFAULT_DOCUMENT_TITLE = "Document"


def count_lines(markdown: str) -> int:
    return max(1, len(markdown.split("\n")))


def build_structure(response: StructureResponse, markdown: str) -> DocumentStructure:
    """Flatten a structure response into an arena, in document order.

    IDs from the response are kept when unique; missing or duplicate IDs are
    replaced with ``section-N``.
    """
    line_count = count_lines(markdown)
    nodes: List[SectionNode] = []
    seen: Set[str] = set()

    def visit(item: StructureSectionItem, parent_id: Optional[str]) -> None:
        node_id = item.id
        if not node_id or node_id in seen:
            node_id = f"section-{len(nodes) + 1}"
            while node_id in seen:
                node_id = f"{node_id}-dup"
        seen.add(node_id)

        start_line = min(max(item.start_line, 1), line_count)
        end_line = min(max(item.end_line, start_line), line_count)

        nodes.append(SectionNode(
            id=node_id,
            title=item.title.strip() or node_id,
            level=item.level,
            start_line=start_line,
            end_line=end_line,
            parent_id=parent_id,
        ))
        for child in item.children:
            visit(child, node_id)

    for section in response.sections:
        visit(section, None)

    return DocumentStructure(title=response.title or DEFAULT_DOCUMENT_TITLE, nodes=nodes)


def slice_section(markdown: str, node: SectionNode) -> str:
    """Return lines ``start_line..end_line`` (1-based, inclusive) of the markdown."""
    lines = markdown.split("\n")
    return "\n".join(lines[node.start_line - 1:node.end_line])


def build_page_drafts(structure: Optional[DocumentStructure], markdown: str) -> List[PageDraft]:
    """Build knowledge-page drafts from the section arena.

    Without a usable structure the whole markdown becomes a single page.
    """
    if structure is None or not structure.nodes:
        title = structure.title if structure and structure.title else DEFAULT_DOCUMENT_TITLE
        return [PageDraft(title=title, content=markdown.strip(), level=1, sort_order=0)]

    return [
        PageDraft(
            node_id=node.id,
            title=node.title,
            content=slice_section(markdown, node).strip(),
            level=node.level,
            parent_id=node.parent_id,
            sort_order=index,
        )
        for index, node in enumerate(structure.nodes)
    ]
