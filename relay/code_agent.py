"""Code agent: multi-file prompts in, file operations out.

The parsers in this module are pure functions from model text to ``FileContext``
lists. Model output has no guaranteed format, so they degrade to a best-effort
result and log instead of raising.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .llm import GenerationOptions, TextProvider
from .schemas import (
    CODE_OPERATIONS,
    ChatMessage,
    ChunkEvent,
    CodeAnalysisEvent,
    CodeStepEvent,
    FileContext,
    FileEvent,
    RefactorPlanEvent,
    StatusEvent,
)
from .transport import EventStream, pace


logger = logging.getLogger("uvicorn.error")

CODE_MAX_TOKENS = 4000

LANGUAGE_BY_EXTENSION = {
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "py": "python",
    "java": "java",
    "cpp": "cpp",
    "c": "c",
    "cs": "csharp",
    "go": "go",
    "rs": "rust",
    "php": "php",
    "rb": "ruby",
    "swift": "swift",
    "kt": "kotlin",
    "scala": "scala",
    "sh": "bash",
    "sql": "sql",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "json": "json",
    "xml": "xml",
    "yaml": "yaml",
    "yml": "yaml",
    "md": "markdown",
}
EXTENSION_BY_LANGUAGE: Dict[str, str] = {}
for _ext, _lang in LANGUAGE_BY_EXTENSION.items():
    EXTENSION_BY_LANGUAGE.setdefault(_lang, _ext)

LANGUAGE_ALIASES = {
    "python3": "python",
    "py3": "python",
    "shell": "bash",
    "sh": "bash",
    "zsh": "bash",
    "console": "bash",
    "c++": "cpp",
    "c#": "csharp",
    "golang": "go",
    "node": "javascript",
}

OPERATION_KEYWORDS = (
    ("analyze", ("analyze", "review")),
    ("edit", ("edit", "modify", "fix")),
    ("create", ("create", "new", "add")),
    ("refactor", ("refactor", "improve", "optimize")),
)

_EDIT_MARKER_RE = re.compile(r"^[ \t>#*_`-]*File:[ \t]*(?P<path>[^\n]*)$", re.MULTILINE)
_FENCE_RE = re.compile(r"```(?P<info>[^\n`]*)\n(?P<body>.*?)```", re.DOTALL)
_PATH_MARKER_RE = re.compile(
    r"^[ \t#/*<!;>\-]*(?:File|Path|Filename)\s*:\s*(?P<path>[^\s`*'\"]+)", re.IGNORECASE
)
_COMMENT_PATH_RE = re.compile(r"^\s*(?://|#|--|/\*|<!--|;)\s*(?P<path>[\w./-]+\.\w+)\s*(?:\*/|-->)?\s*$")
_DECORATED_PATH_RE = re.compile(r"^[\s#*_`>-]*(?P<path>[\w./-]+\.\w+)[\s*_`:]*$")
_PATH_TOKEN_RE = re.compile(r"^[\w./-]+\.\w+$")


def detect_language(path: str) -> str:
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return LANGUAGE_BY_EXTENSION.get(ext, "text")


def normalize_language(tag: str) -> str:
    cleaned = tag.strip().lower()
    if not cleaned:
        return "text"
    if cleaned in LANGUAGE_ALIASES:
        return LANGUAGE_ALIASES[cleaned]
    return LANGUAGE_BY_EXTENSION.get(cleaned, cleaned)


def placeholder_path(index: int, language: str) -> str:
    return f"new_file_{index}.{EXTENSION_BY_LANGUAGE.get(language, 'txt')}"


def determine_operation(request: str, hint: Optional[str] = None) -> str:
    if hint in CODE_OPERATIONS:
        return hint
    lowered = request.lower()
    for operation, keywords in OPERATION_KEYWORDS:
        if any(re.search(rf"\b{keyword}", lowered) for keyword in keywords):
            return operation
    return "analyze"


def build_code_context(files: Iterable[FileContext]) -> str:
    blocks = [
        f"File: {f.path}\nLanguage: {f.language or detect_language(f.path)}\n---\n{f.content}\n---"
        for f in files
    ]
    if not blocks:
        return "No files provided"
    return "\n\n".join(blocks)


def summarize_context(files: List[FileContext]) -> str:
    if not files:
        return "New project - no existing files"
    languages = sorted({f.language or detect_language(f.path) for f in files})
    total_lines = sum(len(f.content.split("\n")) for f in files)
    structure = "\n".join(f"  - {f.path}" for f in files)
    return (
        f"Project has {len(files)} files\n"
        f"Languages: {', '.join(languages)}\n"
        f"Total lines: {total_lines}\n"
        f"File structure:\n{structure}"
    )


def _clean_marker_path(raw: str) -> str:
    text = raw.strip().strip("*_`'\"").strip()
    if not text:
        return ""
    return text.split()[0].strip("*_`'\":,")


def _clean_edit_body(body: str) -> str:
    fence = _FENCE_RE.search(body)
    if fence:
        return fence.group("body").rstrip("\n")
    text = body.strip()
    lines = text.split("\n")
    if lines and lines[0].lower().startswith("language:"):
        lines = lines[1:]
    # Echo of the context block layout: ---\n<content>\n---
    if len(lines) >= 2 and lines[0].strip() == "---":
        try:
            end = next(i for i in range(len(lines) - 1, 0, -1) if lines[i].strip() == "---")
        except StopIteration:
            end = len(lines)
        lines = lines[1:end]
    return "\n".join(lines).strip()


def _resolve_scope_path(path: str, scope: Dict[str, FileContext]) -> Optional[str]:
    if path in scope:
        return path
    normalized = path.lstrip("./")
    matches = [
        known
        for known in scope
        if known.lstrip("./") == normalized
        or known.endswith("/" + normalized)
        or normalized.endswith("/" + known.lstrip("./"))
    ]
    if len(matches) == 1:
        return matches[0]
    return None


def parse_file_edits(response: str, scope: Dict[str, FileContext]) -> List[FileContext]:
    """Split an edit response on ``File: <path>`` markers.

    Only paths already in ``scope`` are accepted. A response with no markers is the
    new content of the single in-scope file when exactly one file is in scope.
    """
    # A File: line inside an open fence is part of the file body.
    markers = [m for m in _EDIT_MARKER_RE.finditer(response) if response.count("```", 0, m.start()) % 2 == 0]
    if not markers:
        if len(scope) == 1:
            current = next(iter(scope.values()))
            return [
                FileContext(
                    path=current.path,
                    content=response,
                    language=current.language or detect_language(current.path),
                )
            ]
        logger.warning("Edit parse degraded: no File: markers and %d files in scope", len(scope))
        return []

    parsed: Dict[str, FileContext] = {}
    for idx, marker in enumerate(markers):
        end = markers[idx + 1].start() if idx + 1 < len(markers) else len(response)
        raw_path = _clean_marker_path(marker.group("path"))
        path = _resolve_scope_path(raw_path, scope) if raw_path else None
        if not path:
            logger.warning("Edit parse degraded: dropped edit for path outside request scope: %r", raw_path)
            continue
        parsed[path] = FileContext(
            path=path,
            content=_clean_edit_body(response[marker.end() : end]),
            language=scope[path].language or detect_language(path),
        )
    return list(parsed.values())


def _path_from_info(tokens: List[str]) -> Optional[str]:
    for token in tokens[1:]:
        candidate = token.split("=", 1)[-1].strip("\"'")
        if _PATH_TOKEN_RE.match(candidate):
            return candidate
    return None


def _path_from_line(line: str, allow_bare: bool) -> Optional[str]:
    marker = _PATH_MARKER_RE.match(line)
    if marker and _PATH_TOKEN_RE.match(marker.group("path").rstrip(":")):
        return marker.group("path").rstrip(":")
    comment = _COMMENT_PATH_RE.match(line)
    if comment:
        return comment.group("path")
    if allow_bare:
        decorated = _DECORATED_PATH_RE.match(line)
        if decorated:
            return decorated.group("path")
    return None


def _preceding_line(text: str, end: int) -> str:
    for line in reversed(text[:end].split("\n")):
        if line.strip():
            return line
    return ""


def parse_file_creation(response: str) -> List[FileContext]:
    """Collect fenced code blocks as new files.

    The path comes from the fence info string, a ``File:``/``Path:`` or bare path
    comment on the block's first line, or a marker line right above the fence.
    Blocks without one get ``new_file_<n>.<ext>``.
    """
    files: List[FileContext] = []
    previous_end = 0
    for match in _FENCE_RE.finditer(response):
        info = match.group("info").strip()
        tokens = info.split()
        tag = tokens[0] if tokens else ""
        path: Optional[str] = None
        if ":" in tag:
            tag, _, maybe_path = tag.partition(":")
            if _PATH_TOKEN_RE.match(maybe_path):
                path = maybe_path
        elif _PATH_TOKEN_RE.match(tag):
            path, tag = tag, ""
        path = path or _path_from_info(tokens)

        body = match.group("body")
        lines = body.split("\n")
        if not path and lines:
            from_comment = _path_from_line(lines[0], allow_bare=False)
            if from_comment:
                path = from_comment
                body = "\n".join(lines[1:])
        if not path:
            gap = response[previous_end : match.start()]
            path = _path_from_line(_preceding_line(gap, len(gap)), allow_bare=True)
        previous_end = match.end()

        language = normalize_language(tag) if tag else (detect_language(path) if path else "text")
        if not path:
            path = placeholder_path(len(files) + 1, language)
        files.append(FileContext(path=path, content=body.strip(), language=language))

    if not files and response.strip():
        logger.warning("Create parse degraded: no fenced code blocks; keeping the response as one file")
        files.append(FileContext(path=placeholder_path(1, "text"), content=response.strip(), language="text"))
    return files


def format_code_response(operation: str, content: str, files: List[FileContext]) -> str:
    listing = "\n".join(f"- {f.path} ({f.language or 'unknown'})" for f in files)
    header = (
        f"## Code Agent - {operation.capitalize()}\n\n"
        f"**Files Processed**: {len(files)}\n"
        f"{listing}\n\n"
        "---\n\n"
    )
    return header + content


@dataclass
class CodeResult:
    operation: str
    content: str
    response: str
    files: List[FileContext] = field(default_factory=list)


class CodeAgent:
    """Runs one code request against a text provider.

    The project view (path -> FileContext) lives for a single ``process_code_request``
    call and is never shared between requests.
    """

    def __init__(self, provider: TextProvider, file_delay_ms: float = 100):
        self.provider = provider
        self.file_delay_ms = file_delay_ms

    async def _call_ai(self, prompt: str, transport: EventStream, model: str, temperature: float) -> str:
        async def forward(text: str) -> None:
            await transport.send(ChunkEvent(content=text))

        return await self.provider.generate(
            [ChatMessage(role="user", content=prompt)],
            GenerationOptions(model=model, temperature=temperature, max_tokens=CODE_MAX_TOKENS),
            on_chunk=forward,
            should_stop=lambda: transport.closed,
        )

    async def _emit_files(self, transport: EventStream, event_type: str, files: List[FileContext]) -> None:
        for file in files:
            if transport.closed:
                return
            await transport.send(
                FileEvent(
                    type=event_type,
                    path=file.path,
                    content=file.content,
                    language=file.language or detect_language(file.path),
                )
            )
            await pace(self.file_delay_ms)

    async def process_code_request(
        self,
        request: str,
        files: List[FileContext],
        transport: EventStream,
        model: str,
        temperature: float = 0.3,
        operation: Optional[str] = None,
    ) -> CodeResult:
        project: Dict[str, FileContext] = {f.path: f for f in files}
        await transport.send(StatusEvent(message="🔧 Code Agent analyzing your request..."))
        operation_type = determine_operation(request, operation)
        logger.info("Code agent operation=%s files=%d", operation_type, len(project))

        if operation_type == "edit":
            return await self._edit(request, project, transport, model, temperature)
        if operation_type == "create":
            return await self._create(request, project, transport, model, temperature)
        if operation_type == "refactor":
            return await self._refactor(request, project, transport, model, temperature)
        return await self._analyze(request, project, transport, model, temperature)

    async def _analyze(
        self, request: str, project: Dict[str, FileContext], transport: EventStream, model: str, temperature: float
    ) -> CodeResult:
        await transport.send(CodeStepEvent(step="analysis", message="📊 Analyzing code structure and patterns..."))
        files_list = list(project.values())
        prompt = f"""Analyze the following code and respond to this request: "{request}"

Code Context:
{build_code_context(files_list)}

Provide:
1. Code structure analysis
2. Potential issues or improvements
3. Best practices recommendations
4. Security considerations if relevant
5. Performance insights"""
        analysis = await self._call_ai(prompt, transport, model, temperature)
        await transport.send(CodeAnalysisEvent(content=analysis, files=[f.path for f in files_list]))
        return CodeResult(
            operation="analyze",
            content=format_code_response("analysis", analysis, files_list),
            response=analysis,
            files=files_list,
        )

    async def _edit(
        self, request: str, project: Dict[str, FileContext], transport: EventStream, model: str, temperature: float
    ) -> CodeResult:
        await transport.send(CodeStepEvent(step="editing", message="✏️ Generating code edits..."))
        prompt = f"""Edit the following code based on this request: "{request}"

Current Code:
{build_code_context(project.values())}

Provide:
1. The modified code with clear markers for changes
2. Explanation of each change
3. Any additional files that need modification
4. Testing recommendations

Format the response with:
- A line "File: <path>" before the complete updated content of each file
- Before/after comparisons for significant changes
- Inline comments for complex modifications"""
        edits = await self._call_ai(prompt, transport, model, temperature)
        edited = parse_file_edits(edits, project)
        for file in edited:
            project[file.path] = file
        await self._emit_files(transport, "file_edit", edited)
        return CodeResult(
            operation="edit",
            content=format_code_response("edit", edits, edited),
            response=edits,
            files=edited,
        )

    async def _create(
        self, request: str, project: Dict[str, FileContext], transport: EventStream, model: str, temperature: float
    ) -> CodeResult:
        await transport.send(CodeStepEvent(step="creating", message="🚀 Creating new code files..."))
        prompt = f"""Create new code based on this request: "{request}"

Existing Project Context:
{summarize_context(list(project.values()))}

Generate:
1. Complete, production-ready code
2. Proper imports and dependencies
3. Error handling and validation
4. Documentation and comments
5. Unit test suggestions

Put each file in its own fenced code block whose first line is a comment "File: <path>".

Ensure the code:
- Follows the project's existing patterns
- Is properly typed (if applicable)
- Includes necessary configuration
- Is secure and performant"""
        new_code = await self._call_ai(prompt, transport, model, temperature)
        created = parse_file_creation(new_code)
        for file in created:
            project[file.path] = file
        await self._emit_files(transport, "file_create", created)
        return CodeResult(
            operation="create",
            content=format_code_response("create", new_code, created),
            response=new_code,
            files=created,
        )

    async def _refactor(
        self, request: str, project: Dict[str, FileContext], transport: EventStream, model: str, temperature: float
    ) -> CodeResult:
        await transport.send(CodeStepEvent(step="refactoring", message="🔨 Refactoring code structure..."))
        files_list = list(project.values())
        prompt = f"""Refactor the following code based on this request: "{request}"

Current Code:
{build_code_context(files_list)}

Refactoring Goals:
1. Improve code organization and readability
2. Reduce duplication (DRY principle)
3. Enhance performance where possible
4. Apply design patterns appropriately
5. Improve type safety and error handling

Provide:
- Step-by-step refactoring plan
- Refactored code with explanations
- Migration guide if breaking changes
- Performance impact analysis"""
        refactored = await self._call_ai(prompt, transport, model, temperature)
        await transport.send(RefactorPlanEvent(content=refactored))
        return CodeResult(
            operation="refactor",
            content=format_code_response("refactor", refactored, files_list),
            response=refactored,
            files=files_list,
        )
