import logging

import pytest

from relay.code_agent import (
    CodeAgent,
    build_code_context,
    detect_language,
    determine_operation,
    format_code_response,
    normalize_language,
    parse_file_creation,
    parse_file_edits,
    summarize_context,
)
from relay.schemas import FileContext
from tests.fakes import FakeTextProvider, RecordingStream


def scope(*files: FileContext):
    return {f.path: f for f in files}


def test_determine_operation_keywords_and_hint():
    assert determine_operation("Please review this module") == "analyze"
    assert determine_operation("fix the off-by-one") == "edit"
    assert determine_operation("Create a CLI entry point") == "create"
    assert determine_operation("optimize the hot loop") == "refactor"
    assert determine_operation("Explain the prefix table") == "analyze"
    assert determine_operation("what does this do?") == "analyze"
    assert determine_operation("fix the bug", "refactor") == "refactor"
    assert determine_operation("fix the bug", "bogus") == "edit"


def test_language_helpers():
    assert detect_language("src/app.tsx") == "typescript"
    assert detect_language("Makefile") == "text"
    assert normalize_language("py") == "python"
    assert normalize_language("Shell") == "bash"
    assert normalize_language("elixir") == "elixir"


def test_code_context_and_summary():
    files = [
        FileContext(path="a.py", content="x = 1\ny = 2"),
        FileContext(path="b.js", content="let z", language="javascript"),
    ]
    context = build_code_context(files)
    assert "File: a.py\nLanguage: python\n---\nx = 1\ny = 2\n---" in context
    assert "File: b.js\nLanguage: javascript" in context
    assert build_code_context([]) == "No files provided"

    summary = summarize_context(files)
    assert "Project has 2 files" in summary
    assert "Languages: javascript, python" in summary
    assert "Total lines: 3" in summary
    assert "  - b.js" in summary
    assert summarize_context([]) == "New project - no existing files"


def test_edit_parser_splits_markers_and_drops_out_of_scope(caplog):
    response = (
        "Here are the changes.\n\n"
        "**File: src/app.py**\n"
        "```python\nprint(\"new\")\n```\n"
        "Explanation: changed output.\n\n"
        "File: lib/util.py\n"
        "def helper():\n    return 2\n\n"
        "File: secrets.env\n"
        "TOKEN=abc\n"
    )
    in_scope = scope(
        FileContext(path="src/app.py", content="print('old')"),
        FileContext(path="lib/util.py", content="def helper():\n    return 1", language="python"),
    )
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        edits = parse_file_edits(response, in_scope)

    assert [e.path for e in edits] == ["src/app.py", "lib/util.py"]
    assert edits[0].content == 'print("new")'
    assert edits[0].language == "python"
    assert edits[1].content == "def helper():\n    return 2"
    assert "secrets.env" in caplog.text


def test_edit_parser_keeps_file_comment_inside_fence():
    in_scope = scope(FileContext(path="app.py", content="def f():\n    return 1"))
    response = "File: app.py\n```python\n# File: app.py\ndef f():\n    return 2\n```\n"

    edits = parse_file_edits(response, in_scope)

    assert len(edits) == 1
    assert edits[0].path == "app.py"
    assert edits[0].content == "# File: app.py\ndef f():\n    return 2"


def test_edit_parser_single_file_fallback():
    in_scope = scope(FileContext(path="main.go", content="package main"))
    response = "package main\n\nfunc main() {}\n"
    edits = parse_file_edits(response, in_scope)
    assert len(edits) == 1
    assert edits[0].path == "main.go"
    assert edits[0].content == response
    assert edits[0].language == "go"


def test_edit_parser_without_markers_and_many_files_returns_nothing():
    in_scope = scope(FileContext(path="a.py", content=""), FileContext(path="b.py", content=""))
    assert parse_file_edits("I changed a few things.", in_scope) == []


def test_edit_parser_matches_relative_path_suffix():
    in_scope = scope(FileContext(path="project/src/app.py", content=""))
    edits = parse_file_edits("File: src/app.py\nx = 1\n", in_scope)
    assert [e.path for e in edits] == ["project/src/app.py"]
    assert edits[0].content == "x = 1"


def test_create_parser_assigns_distinct_placeholders():
    response = "Two files:\n\n```python\nprint(1)\n```\n\n```javascript\nconsole.log(1)\n```\n"
    files = parse_file_creation(response)
    assert [(f.path, f.language, f.content) for f in files] == [
        ("new_file_1.py", "python", "print(1)"),
        ("new_file_2.js", "javascript", "console.log(1)"),
    ]


def test_create_parser_reads_paths_from_comments_and_markers():
    response = (
        "```python\n# File: pkg/models.py\nclass Model:\n    pass\n```\n\n"
        "**web/index.html**\n"
        "```html\n<p>hi</p>\n```\n\n"
        "```ts src/util.ts\nexport const x = 1\n```\n"
    )
    files = parse_file_creation(response)
    assert [f.path for f in files] == ["pkg/models.py", "web/index.html", "src/util.ts"]
    assert files[0].content == "class Model:\n    pass"
    assert files[2].language == "typescript"


def test_create_parser_without_blocks_keeps_blob():
    files = parse_file_creation("Just put `print(1)` in a file.")
    assert len(files) == 1
    assert files[0].path == "new_file_1.txt"
    assert files[0].content == "Just put `print(1)` in a file."
    assert parse_file_creation("   ") == []


def test_format_code_response_header():
    text = format_code_response("edit", "body", [FileContext(path="a.py", content="", language="python")])
    assert text == "## Code Agent - Edit\n\n**Files Processed**: 1\n- a.py (python)\n\n---\n\nbody"


@pytest.mark.asyncio
async def test_edit_request_emits_file_events():
    provider = FakeTextProvider(chunks=["print(", "2)"])
    transport = RecordingStream()
    agent = CodeAgent(provider, file_delay_ms=0)

    result = await agent.process_code_request(
        "fix the print", [FileContext(path="app.py", content="print(1)")], transport, model="demo", temperature=0.3
    )

    assert transport.types == ["status", "code_step", "chunk", "chunk", "file_edit"]
    event = transport.of_type("file_edit")[0]
    assert (event.path, event.content, event.language) == ("app.py", "print(2)", "python")
    assert result.operation == "edit"
    assert result.content.startswith("## Code Agent - Edit\n\n**Files Processed**: 1\n- app.py (python)")
    assert result.content.endswith("print(2)")
    assert provider.calls[0]["max_tokens"] == 4000
    assert 'Edit the following code based on this request: "fix the print"' in provider.prompts[0]


@pytest.mark.asyncio
async def test_create_request_emits_file_create_events():
    provider = FakeTextProvider(chunks=["```python\nprint(1)\n```\n```python\nprint(2)\n```"])
    transport = RecordingStream()
    agent = CodeAgent(provider, file_delay_ms=0)

    result = await agent.process_code_request("build two scripts", [], transport, model="demo", operation="create")

    created = transport.of_type("file_create")
    assert [e.path for e in created] == ["new_file_1.py", "new_file_2.py"]
    assert [f.path for f in result.files] == ["new_file_1.py", "new_file_2.py"]
    assert "Existing Project Context:\nNew project - no existing files" in provider.prompts[0]


@pytest.mark.asyncio
async def test_analyze_and_refactor_emit_summary_events():
    files = [FileContext(path="a.py", content="x = 1")]

    provider = FakeTextProvider(chunks=["Looks fine."])
    transport = RecordingStream()
    await CodeAgent(provider, file_delay_ms=0).process_code_request("review this", files, transport, model="demo")
    analysis = transport.of_type("code_analysis")[0]
    assert analysis.content == "Looks fine."
    assert analysis.files == ["a.py"]

    provider = FakeTextProvider(chunks=["Step 1: rename."])
    transport = RecordingStream()
    result = await CodeAgent(provider, file_delay_ms=0).process_code_request(
        "improve naming", files, transport, model="demo"
    )
    assert transport.of_type("refactor_plan")[0].content == "Step 1: rename."
    assert not transport.of_type("file_edit")
    assert result.content.startswith("## Code Agent - Refactor")
