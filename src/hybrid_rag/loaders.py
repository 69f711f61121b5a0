from __future__ import annotations
from typing import List
from pathlib import Path
import logging

import pandas as pd
from bs4 import BeautifulSoup
from pypdf import PdfReader

from .schemas import Document
from .config import settings

logger = logging.getLogger(__name__)


SUPPORTED_EXTENSIONS = {".pdf", ".csv", ".tsv", ".xlsx", ".html", ".htm", ".md", ".txt"}


def discover_all_sources(data_dir: Path | None = None) -> List[Path]:
    """Return all supported files under data_dir, in a stable order."""
    data_dir = Path(data_dir or settings.data_dir)
    logger.info("Scanning %s for supported files...", data_dir)
    paths: List[Path] = []
    for path in sorted(data_dir.rglob("*")):
        if path.is_file() and path.suffix.lower() in SUPPORTED_EXTENSIONS:
            paths.append(path)
    logger.info("Total sources discovered: %d", len(paths))
    return paths


def _load_text_from_pdf(path: Path) -> str:
    reader = PdfReader(str(path))
    texts = []
    for page_num, page in enumerate(reader.pages, start=1):
        texts.append(page.extract_text() or "")
        if page_num % 10 == 0:
            logger.debug("Parsed %d pages in %s", page_num, path.name)
    return "\n".join(texts)


def _load_text_from_csv(path: Path) -> str:
    df = pd.read_csv(path)
    return df.to_csv(index=False)


def _load_text_from_tsv(path: Path) -> str:
    df = pd.read_csv(path, sep="\t")
    return df.to_csv(index=False)


def _load_text_from_xlsx(path: Path) -> str:
    df = pd.read_excel(path)
    return df.to_csv(index=False)


def _load_text_from_html(path: Path) -> str:
    html = path.read_text(encoding="utf-8", errors="ignore")
    soup = BeautifulSoup(html, "html.parser")
    for script in soup(["script", "style"]):
        script.extract()
    return soup.get_text(separator="\n")


def _load_text_from_md_or_txt(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="ignore")


def load_file_to_text(path: Path) -> str:
    ext = path.suffix.lower()
    logger.debug("Loading %s", path)
    if ext == ".pdf":
        return _load_text_from_pdf(path)
    if ext == ".csv":
        return _load_text_from_csv(path)
    if ext == ".tsv":
        return _load_text_from_tsv(path)
    if ext == ".xlsx":
        return _load_text_from_xlsx(path)
    if ext in {".html", ".htm"}:
        return _load_text_from_html(path)
    if ext in {".md", ".txt"}:
        return _load_text_from_md_or_txt(path)
    raise ValueError(f"Unsupported extension: {ext}")


def load_document(path: Path, data_dir: Path | None = None) -> Document:
    """Load one file; its id is the path relative to data_dir (posix form)."""
    path = Path(path)
    doc_id = path.as_posix()
    if data_dir is not None:
        try:
            doc_id = path.relative_to(data_dir).as_posix()
        except ValueError:
            pass
    return Document(id=doc_id, content=load_file_to_text(path))


def load_documents(data_dir: Path | None = None) -> List[Document]:
    data_dir = Path(data_dir or settings.data_dir)
    docs: List[Document] = []
    paths = discover_all_sources(data_dir)
    for idx, p in enumerate(paths, start=1):
        logger.info("[%d/%d] Reading %s", idx, len(paths), p)
        try:
            docs.append(load_document(p, data_dir))
        except Exception as e:
            logger.warning("Failed to load %s: %s", p, e)
            continue
    return docs
