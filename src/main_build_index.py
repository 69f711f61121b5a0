# src/main_build_index.py

from __future__ import annotations
import sys
from pathlib import Path

from hybrid_rag.logging_utils import setup_logging
from hybrid_rag.service import GraphRAGService


def main(argv: list[str] | None = None):
    """
    Ingest every supported file under the data directory (default from
    settings, or the first argument):
    - chunk each document
    - extract and merge entities/relations
    - write chunks, embeddings and graph to the three stores
    """
    argv = sys.argv[1:] if argv is None else argv
    setup_logging()
    data_dir = Path(argv[0]) if argv else None

    service = GraphRAGService()
    try:
        result = service.build_index(data_dir)
    finally:
        service.close()

    print("Index built")
    print(f"- Number of sources   : {result['num_sources']}")
    print(f"- Number of chunks    : {result['num_chunks']}")
    print("- Sources:")
    for src in result["sources"]:
        print(f"  - {src}")
    if result["failed"]:
        print("- Failed:")
        for doc_id, err in result["failed"].items():
            print(f"  - {doc_id}: {err}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
