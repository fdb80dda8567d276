"""Tests for template rendering and render hooks."""

import pytest


def _book_context(**overrides):
    book = {
        "id": 1, "title": "Deep Work", "author": "Cal Newport", "category": "books",
        "num_highlights": 2, "last_highlight_at": None, "updated": "2024-01-02T10:00:00+00:00",
        "cover_image_url": None, "highlights_url": None, "source_url": None, "asin": None,
        "tags": [{"id": 3, "name": "focus"}],
    }
    book.update(overrides)
    highlights = [
        {"id": 10, "text": "First line\nsecond line", "note": "my note", "location": 5,
         "location_type": "location", "highlighted_at": None, "url": None, "color": "",
         "updated": "2024-01-02T10:00:00+00:00", "book_id": 1,
         "tags": [{"id": 9, "name": "big idea"}], "location_url": None},
        {"id": 11, "text": "Another", "note": "", "location": 9,
         "location_type": "page", "highlighted_at": None, "url": None, "color": "",
         "updated": "2024-01-02T10:00:00+00:00", "book_id": 1, "tags": [],
         "location_url": "https://readwise.io/to_kindle?asin=B0&location=9"},
    ]
    return {"book": book, "highlights": highlights, "tags": book["tags"]}


def _renderer(**kwargs):
    from marginalia.renderer import Renderer, load_template

    return Renderer(
        book_template=load_template(None, "book.md.j2"),
        document_template=load_template(None, "document.md.j2"),
        **kwargs,
    )


class TestBuiltInTemplates:
    def test_book_note(self):
        from marginalia.models import Kind

        text = _renderer().render_unit(Kind.BOOKS, _book_context())

        assert text.startswith("---\ntitle: \"Deep Work\"\n")
        assert "readwise_id: 1" in text
        assert '  - "focus"' in text
        assert "> First line\n> second line" in text
        assert "> **Note:** my note" in text
        assert "location 5 #big-idea ^rw10" in text
        assert "page 9 ([open](https://readwise.io/to_kindle?asin=B0&location=9)) ^rw11" in text
        assert text.index("^rw10") < text.index("^rw11")
        assert text.count("%% marginalia:begin %%") == 1
        assert text.rstrip().endswith("%% marginalia:end %%")

    def test_rendering_is_deterministic(self):
        from marginalia.models import Kind

        r = _renderer()
        assert r.render_unit(Kind.BOOKS, _book_context()) == r.render_unit(Kind.BOOKS, _book_context())

    def test_yaml_special_characters_escaped(self):
        from marginalia.models import Kind

        text = _renderer().render_unit(Kind.BOOKS, _book_context(title='The "Best" Book'))
        assert 'title: "The \\"Best\\" Book"' in text

    def test_document_note(self):
        from marginalia.models import Kind

        context = {"document": {
            "id": "d1", "url": "https://example.com/a", "title": None, "author": None,
            "source": None, "category": "article", "location": "later", "site_name": "Example",
            "word_count": 1200, "created_at": "2024-01-01T00:00:00+00:00",
            "updated_at": "2024-01-01T00:00:00+00:00", "published_date": None,
            "summary": "Short.", "image_url": None, "content": None, "source_url": None,
            "notes": None, "parent_id": None, "reading_progress": 0.25,
            "first_opened_at": None, "last_opened_at": None,
            "saved_at": "2024-03-04T05:06:07+00:00", "last_moved_at": "2024-01-01T00:00:00+00:00",
        }}
        text = _renderer().render_unit(Kind.DOCUMENTS, context)

        assert 'title: "https://example.com/a"' in text
        assert "saved_at: 2024-03-04" in text
        assert "- Site: Example" in text
        assert "- Progress: 25%" in text
        assert "## Summary\n\nShort." in text


class TestRenderErrors:
    def test_missing_variable_raises(self):
        from marginalia.renderer import RenderError, render

        with pytest.raises(RenderError, match="nope"):
            render("{{ nope }}", {})

    def test_syntax_error_raises(self):
        from marginalia.renderer import RenderError, render

        with pytest.raises(RenderError):
            render("{% if %}", {})

    def test_custom_template_file(self, tmp_path):
        from marginalia.renderer import load_template, render

        path = tmp_path / "t.j2"
        path.write_text("{{ book.title | sanitize }}")
        assert render(load_template(str(path), "book.md.j2"), {"book": {"title": "a/b.c"}}) == "ab-c"


class TestHooks:
    def test_context_hook_runs_before_render(self):
        from marginalia.models import Kind

        def add_suffix(context):
            context["book"]["title"] += " (annotated)"
            return context

        text = _renderer(context_hook=add_suffix).render_unit(Kind.BOOKS, _book_context())
        assert "# Deep Work (annotated)" in text

    def test_text_hook_runs_after_render(self):
        from marginalia.models import Kind

        text = _renderer(text_hook=str.upper).render_unit(Kind.BOOKS, _book_context())
        assert "# DEEP WORK" in text

    def test_failing_hook_is_render_error(self):
        from marginalia.models import Kind
        from marginalia.renderer import RenderError

        def broken(context):
            raise KeyError("x")

        with pytest.raises(RenderError, match="broken"):
            _renderer(context_hook=broken).render_unit(Kind.BOOKS, _book_context())

    def test_wrong_return_type_is_render_error(self):
        from marginalia.models import Kind
        from marginalia.renderer import RenderError

        with pytest.raises(RenderError, match="expected str"):
            _renderer(text_hook=len).render_unit(Kind.BOOKS, _book_context())


class TestFilters:
    def test_date(self):
        from datetime import datetime

        from marginalia.renderer import _date

        assert _date("2024-03-04T05:06:07+00:00") == "2024-03-04"
        assert _date(datetime(2024, 1, 2), "%d/%m") == "02/01"
        assert _date(None) == ""

    def test_blockquote_and_hashtag(self):
        from marginalia.renderer import _blockquote, _hashtag

        assert _blockquote("a\n\nb") == "> a\n>\n> b"
        assert _hashtag("big idea") == "#big-idea"


class TestMetadataHook:
    def test_extra_keys_land_in_frontmatter(self):
        from marginalia.models import Kind

        def metadata(context):
            return {"rating": 5, "shelf": "to reread"}

        text = _renderer(metadata_hook=metadata).render_unit(Kind.BOOKS, _book_context())
        frontmatter = text.split("---\n")[1]
        assert "rating: 5\n" in frontmatter
        assert 'shelf: "to reread"\n' in frontmatter
        assert "note-kind: readwise-book\n" in frontmatter

    def test_non_mapping_result_is_a_render_error(self):
        from marginalia.models import Kind
        from marginalia.renderer import RenderError

        with pytest.raises(RenderError, match="metadata hook"):
            _renderer(metadata_hook=lambda context: ["not", "a", "dict"]).render_unit(
                Kind.BOOKS, _book_context(),
            )
