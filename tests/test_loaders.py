import pytest

from hybrid_rag.loaders import discover_all_sources, load_document, load_documents, load_file_to_text


def test_discovers_supported_files_in_order(tmp_path):
    (tmp_path / "b.txt").write_text("beta", encoding="utf-8")
    (tmp_path / "nested").mkdir()
    (tmp_path / "nested" / "a.md").write_text("# alpha", encoding="utf-8")
    (tmp_path / "image.png").write_bytes(b"\x89PNG")

    paths = discover_all_sources(tmp_path)
    assert [p.relative_to(tmp_path).as_posix() for p in paths] == ["b.txt", "nested/a.md"]


def test_document_id_is_relative_path(tmp_path):
    (tmp_path / "notes").mkdir()
    path = tmp_path / "notes" / "doc.txt"
    path.write_text("Neo4j stores entities.", encoding="utf-8")
    doc = load_document(path, tmp_path)
    assert doc.id == "notes/doc.txt"
    assert doc.content == "Neo4j stores entities."


def test_html_drops_scripts(tmp_path):
    path = tmp_path / "page.html"
    path.write_text(
        "<html><script>var x = 1;</script><body><p>Bolt stores chunks</p></body></html>",
        encoding="utf-8",
    )
    text = load_file_to_text(path)
    assert "Bolt stores chunks" in text
    assert "var x" not in text


def test_csv_is_flattened(tmp_path):
    path = tmp_path / "table.csv"
    path.write_text("name,role\nNeo4j,graph\n", encoding="utf-8")
    assert "Neo4j,graph" in load_file_to_text(path)


def test_unsupported_extension(tmp_path):
    path = tmp_path / "x.bin"
    path.write_bytes(b"\x00")
    with pytest.raises(ValueError):
        load_file_to_text(path)


def test_load_documents_skips_unreadable(tmp_path):
    (tmp_path / "ok.txt").write_text("fine", encoding="utf-8")
    (tmp_path / "broken.pdf").write_bytes(b"not a pdf")
    docs = load_documents(tmp_path)
    assert [d.id for d in docs] == ["ok.txt"]
