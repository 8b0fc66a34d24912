import fitz
import pytest

from labeling.models import Document
from labeling.sources import iter_documents, read_document


def _write_pdf(path, pages):
    pdf = fitz.open()
    for text in pages:
        page = pdf.new_page()
        page.insert_text((72, 72), text)
    pdf.save(str(path))
    pdf.close()


def test_read_text_document(tmp_path):
    path = tmp_path / "nota.txt"
    path.write_text("  Nota fiscal\nValor: 10,00 \n\n", encoding="utf-8")

    assert read_document(path) == Document("nota.txt", "Nota fiscal\nValor: 10,00")


def test_read_pdf_document_joins_pages(tmp_path):
    path = tmp_path / "fatura.pdf"
    _write_pdf(path, ["Fatura 123", "Valor total 450.00"])

    document = read_document(path)

    assert document.id == "fatura.pdf"
    assert "Fatura 123" in document.content
    assert "Valor total 450.00" in document.content
    assert document.content.index("Fatura") < document.content.index("Valor")


def test_read_document_rejects_unsupported_type(tmp_path):
    path = tmp_path / "image.png"
    path.write_bytes(b"\x89PNG")

    with pytest.raises(ValueError, match="Unsupported"):
        read_document(path)


def test_iter_documents_is_sorted_and_skips_unreadable_files(tmp_path):
    (tmp_path / "b.txt").write_text("segundo", encoding="utf-8")
    (tmp_path / "a.txt").write_text("primeiro", encoding="utf-8")
    (tmp_path / "broken.pdf").write_bytes(b"not a pdf")
    (tmp_path / "notes.md").write_text("ignored", encoding="utf-8")
    (tmp_path / "sub").mkdir()

    documents = list(iter_documents(tmp_path))

    assert [d.id for d in documents] == ["a.txt", "b.txt"]
    assert [d.content for d in documents] == ["primeiro", "segundo"]
