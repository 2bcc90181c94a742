import pytest
from dataclasses import FrozenInstanceError

from chatpatch.parsing import (
    parse, detect_format, normalize_path, parse_search_replace_blocks, parse_relevant_files,
    path_from_comment, path_from_fence_info, declared_path, split_unified_diffs
)
from chatpatch.models import (
    EditFormat, ParsedEdit, WholePayload, DiffPayload, TextSegment, RelevantSegment, EditSegment
)
from tests.conftest import stub_to_diff, wrap_in_code_block


def edits_of(segments):
    return [s.edit for s in segments if isinstance(s, EditSegment)]


class TestScenarios:
    def test_heading_and_fenced_whole_file(self):
        segments = parse("Hello\n### Updated file: `src/a.ts`\n```ts\nconst x=1\n```\n")
        assert segments[0] == TextSegment("Hello")
        assert len(segments) == 2
        edit = segments[1].edit
        assert edit.file_path == "src/a.ts"
        assert edit.edit_format == EditFormat.WHOLE
        assert edit.payload == WholePayload("const x=1")

    def test_relevant_files_list(self):
        segments = parse("**Relevant files:**\n- `src/a.ts`\n- `src/b.ts`\n")
        assert segments == [RelevantSegment(segments[0].item)]
        assert segments[0].item.file_paths == ("src/a.ts", "src/b.ts")
        assert edits_of(segments) == []


class TestRelevantFiles:
    def test_bare_and_starred_bullets(self):
        item, rest = parse_relevant_files("**relevant files**\n* a.py\n- `b/c.py`\nThen text")
        assert item.file_paths == ("a.py", "b/c.py")
        assert rest == "Then text"

    def test_zero_paths_falls_through(self):
        segments = parse("**Relevant files:**\nNothing here")
        assert len(segments) == 1
        assert isinstance(segments[0], TextSegment)

    def test_followed_by_edits(self):
        text = "**Relevant files:**\n- `a.py`\n\nHere:\n### Updated file: `a.py`\n" + wrap_in_code_block("x = 1", "python")
        segments = parse(text)
        assert isinstance(segments[0], RelevantSegment)
        assert segments[1] == TextSegment("Here:")
        assert edits_of(segments)[0].payload == WholePayload("x = 1")


class TestFormatDetection:
    @pytest.mark.parametrize("body,expected", [
        ("--- a/x.py\n+++ b/x.py\n@@ -1 +1 @@\n-a\n+b", EditFormat.DIFF),
        ("@@ -1,2 +1,2 @@\n a\n-b\n+c", EditFormat.DIFF),
        (stub_to_diff("[SEARCH]\na\n[REPLACE]\nb\n[END]"), EditFormat.BEFORE_AFTER),
        ("def a():\n    pass\n# ... rest unchanged\n", EditFormat.TRUNCATED),
        ("<div>\n  <!-- ... -->\n</div>", EditFormat.TRUNCATED),
        ("function a() {\n  // existing code remains the same\n}", EditFormat.TRUNCATED),
        ("print(1)\n", EditFormat.WHOLE),
        ("", EditFormat.WHOLE),
    ])
    def test_exactly_one_format(self, body, expected):
        assert detect_format(body) == expected

    def test_marker_inside_nested_block_is_not_truncation(self):
        body = "# Doc\n```js\n// ...\n```"
        assert detect_format(body) == EditFormat.WHOLE

    def test_before_after_payload(self):
        body = stub_to_diff("""
[SEARCH]
old line
[REPLACE]
new line
[END]
[SEARCH]
second
[REPLACE]
2nd
[END]
""")
        text = "### Updated file: `a.py`\n" + wrap_in_code_block(body, "python")
        edit = edits_of(parse(text))[0]
        assert edit.edit_format == EditFormat.BEFORE_AFTER
        assert [(b.search, b.replace) for b in edit.payload.blocks] == [("old line", "new line"), ("second", "2nd")]

    def test_ellipsis_splits_into_blocks(self):
        body = stub_to_diff("[SEARCH]\na\n...\nc\n[REPLACE]\nA\n...\nC\n[END]")
        blocks = parse_search_replace_blocks(body)
        assert [(b.search, b.replace) for b in blocks] == [("a", "A"), ("c", "C")]

    def test_empty_search_half(self):
        body = stub_to_diff("[SEARCH]\n[REPLACE]\nfresh\n[END]")
        blocks = parse_search_replace_blocks(body)
        assert blocks[0].search == ""
        assert blocks[0].replace == "fresh"


class TestHeadings:
    def test_deleted_file(self):
        edit = edits_of(parse("Cleanup.\n### Deleted file: `src/old.ts`\n"))[0]
        assert edit.is_deleted
        assert edit.file_path == "src/old.ts"
        assert edit.payload == WholePayload("")

    def test_renamed_without_block(self):
        edit = edits_of(parse("### Renamed file: `old/a.ts` → `new/a.ts`\n"))[0]
        assert edit.is_renamed
        assert edit.file_path == "new/a.ts"
        assert edit.old_path == "old/a.ts"

    def test_renamed_with_block(self):
        text = "### Renamed file: `a.py` to `b.py`\n" + wrap_in_code_block("print(2)", "python")
        edit = edits_of(parse(text))[0]
        assert (edit.file_path, edit.old_path, edit.is_renamed) == ("b.py", "a.py", True)
        assert edit.payload == WholePayload("print(2)")

    def test_new_file_with_bare_path(self):
        edit = edits_of(parse("## New file: src/n.py\n" + wrap_in_code_block("x = 1", "python")))[0]
        assert edit.is_new
        assert edit.file_path == "src/n.py"

    def test_workspace_scoped_heading(self):
        edit = edits_of(parse("### Updated file: `web:src/a.ts`\n" + wrap_in_code_block("x", "ts")))[0]
        assert edit.workspace_name == "web"
        assert edit.file_path == "src/a.ts"


class TestXml:
    def test_file_tag(self):
        edit = edits_of(parse('<file path="src/x.ts">\nconst a = 1;\n</file>'))[0]
        assert edit.file_path == "src/x.ts"
        assert edit.payload == WholePayload("const a = 1;")

    def test_cdata_is_removed(self):
        edit = edits_of(parse('<file path="a.py">\n<![CDATA[\nprint(1)\n]]>\n</file>'))[0]
        assert edit.payload == WholePayload("print(1)")

    def test_inline_tag(self):
        edit = edits_of(parse('<file path="a.txt">hello</file>'))[0]
        assert edit.payload == WholePayload("hello")

    def test_several_files_in_wrapper(self):
        text = '<files>\n<file path="a.py">\na = 1\n</file>\n<file path="b.py">\nb = 2\n</file>\n</files>'
        edits = edits_of(parse(text))
        assert [e.file_path for e in edits] == ["a.py", "b.py"]

    def test_tag_inside_fence(self):
        text = wrap_in_code_block('<file path="c.py">\nc = 3\n</file>', "xml")
        edit = edits_of(parse(text))[0]
        assert edit.file_path == "c.py"
        assert edit.payload == WholePayload("c = 3")


class TestFencePaths:
    def test_fence_attribute(self):
        edit = edits_of(parse(wrap_in_code_block("print(1)", 'python path="src/app.py"')))[0]
        assert edit.file_path == "src/app.py"

    def test_language_colon_path(self):
        edit = edits_of(parse(wrap_in_code_block("let b = 2", "ts:src/b.ts")))[0]
        assert edit.file_path == "src/b.ts"

    def test_first_line_comment_is_consumed(self):
        edit = edits_of(parse(wrap_in_code_block("// src/c.ts\nconst c = 3", "ts")))[0]
        assert edit.file_path == "src/c.ts"
        assert edit.payload == WholePayload("const c = 3")

    def test_lone_path_line_above_fence(self):
        edit = edits_of(parse("src/d.py\n" + wrap_in_code_block("x = 1", "python")))[0]
        assert edit.file_path == "src/d.py"

    def test_bold_path_above_fence(self):
        edit = edits_of(parse("**src/e.py**\n" + wrap_in_code_block("e = 1", "python")))[0]
        assert edit.file_path == "src/e.py"

    def test_backticked_path_ending_sentence(self):
        edit = edits_of(parse("In `src/f.py`:\n" + wrap_in_code_block("f = 1", "python")))[0]
        assert edit.file_path == "src/f.py"

    def test_diff_headers_supply_path(self):
        body = "--- a/src/x.py\n+++ b/src/x.py\n@@ -1 +1 @@\n-a\n+b"
        edit = edits_of(parse(wrap_in_code_block(body, "diff")))[0]
        assert edit.file_path == "src/x.py"
        assert edit.edit_format == EditFormat.DIFF
        assert isinstance(edit.payload, DiffPayload)
        assert edit.payload.patch.endswith("+b\n")

    def test_dev_null_source_is_new_file(self):
        body = "--- /dev/null\n+++ b/new.py\n@@ -0,0 +1 @@\n+x"
        edit = edits_of(parse(wrap_in_code_block(body, "diff")))[0]
        assert edit.file_path == "new.py"
        assert edit.is_new

    def test_nested_fence_stays_in_body(self):
        inner = "# Title\n```python\nprint(1)\n```"
        text = "### New file: `README.md`\n" + "````markdown\n" + inner + "\n````"
        edit = edits_of(parse(text))[0]
        assert edit.payload == WholePayload(inner)

    def test_tagged_inner_fence_with_equal_ticks(self):
        text = "### Updated file: `doc.md`\n```markdown\n# T\n```bash\nls\n```\nend\n```"
        edit = edits_of(parse(text))[0]
        assert edit.payload == WholePayload("# T\n```bash\nls\n```\nend")


class TestUnifiedDiffs:
    def test_split_waits_for_target_header(self):
        lines = [
            "diff --git a/a.py b/a.py", "--- a/a.py", "+++ b/a.py", "@@ -1 +1 @@", "-a", "+b",
            "--- a/b.py", "+++ b/b.py", "@@ -1 +1 @@", "-c", "+d",
        ]
        chunks = split_unified_diffs(lines)
        assert [c[0] for c in chunks] == ["diff --git a/a.py b/a.py", "--- a/b.py"]
        assert sum(len(c) for c in chunks) == len(lines)

    def test_removed_header_lookalike_stays_in_hunk(self):
        lines = ["--- a/q.sql", "+++ b/q.sql", "@@ -1,2 +1 @@", "--- comment", "-select 1", "+select 2"]
        assert split_unified_diffs(lines) == [lines]

    def test_heading_binds_headerless_hunk(self):
        text = "### Updated file: `calc.py`\n@@ -1 +1 @@\n-x = 1\n+x = 2\n\nDone."
        segments = parse(text)
        edit = edits_of(segments)[0]
        assert edit.file_path == "calc.py"
        assert edit.payload == DiffPayload("@@ -1 +1 @@\n-x = 1\n+x = 2\n")
        assert segments[-1] == TextSegment("Done.")

    def test_git_header_supplies_path(self):
        body = "diff --git a/lib/m.py b/lib/m.py\nold mode 100644\nnew mode 100755"
        edit = edits_of(parse(wrap_in_code_block(body, "diff")))[0]
        assert edit.file_path == "lib/m.py"
        assert not edit.is_renamed

    def test_diff_without_paths_becomes_text(self):
        segments = parse(wrap_in_code_block("@@ -1 +1 @@\n-a\n+b", "diff"))
        assert edits_of(segments) == []
        assert isinstance(segments[0], TextSegment)


class TestDegradation:
    def test_block_without_path_becomes_text(self):
        segments = parse("Some text\n```\nno path here\n```\nMore")
        assert edits_of(segments) == []
        assert len(segments) == 1
        assert "no path here" in segments[0].content

    def test_bad_block_keeps_siblings(self):
        text = (
            "```\nmystery\n```\n"
            "### Updated file: `ok.py`\n" + wrap_in_code_block("ok = True", "python")
        )
        segments = parse(text)
        assert isinstance(segments[0], TextSegment)
        assert [e.file_path for e in edits_of(segments)] == ["ok.py"]

    def test_empty_input(self):
        assert parse("") == []
        assert parse("   ") == []


class TestContentOnly:
    def test_first_line_comment_declares_file(self):
        edit = edits_of(parse("// src/only.ts\nexport const a = 1;\n"))[0]
        assert edit.file_path == "src/only.ts"
        assert edit.payload == WholePayload("export const a = 1;")

    def test_prose_is_not_a_file(self):
        segments = parse("# Just a heading\nSome prose.")
        assert edits_of(segments) == []


class TestPathHelpers:
    @pytest.mark.parametrize("raw,expected", [
        ("./src/a.ts", (None, "src/a.ts")),
        ("file: src/a.ts", (None, "src/a.ts")),
        ("src\\a.ts", (None, "src/a.ts")),
        ("/abs/x.ts", (None, "abs/x.ts")),
        ("api:lib/b.py", ("api", "lib/b.py")),
        ("**src/d.py**", (None, "src/d.py")),
        ("*.py", (None, "*.py")),
        ("src/**/*.ts", (None, "src/**/*.ts")),
        ("`c.py`", (None, "c.py")),
    ])
    def test_normalize_path(self, raw, expected):
        assert normalize_path(raw) == expected

    @pytest.mark.parametrize("line,expected", [
        ("// src/app.ts", "src/app.ts"),
        ("# utils.py", "utils.py"),
        ("<!-- index.html -->", "index.html"),
        ("/* style.css */", "style.css"),
        ("-- schema.sql", "schema.sql"),
        ("# Title", None),
        ("// just a comment", None),
        ("// archive.verylongextension", None),
        ("// ../escape.py", None),
    ])
    def test_path_from_comment(self, line, expected):
        assert path_from_comment(line) == expected

    def test_path_from_fence_info(self):
        assert path_from_fence_info("python") is None
        assert path_from_fence_info("python name='a.py'") == "a.py"
        assert path_from_fence_info("python src/a.py") == "src/a.py"

    def test_declared_path_rejects_prose(self):
        assert declared_path("Update `src/a.ts` like so:") is None
        assert declared_path("### src/a.ts") == "src/a.ts"


class TestParsedEdit:
    def test_payload_must_match_format(self):
        with pytest.raises(TypeError):
            ParsedEdit(file_path="a.py", edit_format=EditFormat.WHOLE, payload=DiffPayload("x"))

    def test_rename_requires_old_path(self):
        with pytest.raises(ValueError):
            ParsedEdit(file_path="a.py", edit_format=EditFormat.WHOLE, payload=WholePayload(""), is_renamed=True)

    def test_immutable(self):
        edit = ParsedEdit(file_path="a.py", edit_format=EditFormat.WHOLE, payload=WholePayload(""))
        with pytest.raises(FrozenInstanceError):
            edit.file_path = "b.py"
