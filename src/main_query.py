# src/main_query.py

from __future__ import annotations
import sys

from hybrid_rag.errors import HybridRAGError
from hybrid_rag.logging_utils import setup_logging
from hybrid_rag.schemas import ConversationTurn, Role
from hybrid_rag.service import GraphRAGService


def main(argv: list[str] | None = None):
    """Run one query against the stores and print the retrieved context."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print("usage: main_query.py <question>", file=sys.stderr)
        return 2
    setup_logging()

    service = GraphRAGService()
    try:
        result = service.query([ConversationTurn(role=Role.USER, message=" ".join(argv))])
    except HybridRAGError as e:
        print(f"Query failed: {e}", file=sys.stderr)
        return 1
    finally:
        service.close()

    print(
        f"Found {len(result.local_entities)} local entities and "
        f"{len(result.global_entities)} global entities"
    )
    print(result.to_context())
    return 0


if __name__ == "__main__":
    sys.exit(main())
