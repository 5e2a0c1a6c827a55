# tools.py
# Built-in tool implementations.
# The engine reaches these only through the ToolRegistry; build_catalog()
# is the single place they are registered.

import os
from pathlib import Path

import httpx

from plan_healer.registry import LocalCatalog

TEXT_SUFFIXES = {".md", ".txt", ".json", ".csv", ".yaml", ".yml", ".py", ".html", ".rst"}


def _tool_echo(args: dict) -> str:
    return str(args.get("message", ""))


def _tool_summarize(args: dict) -> dict:
    text = str(args.get("text", "")).strip()
    if not text:
        return {"success": False, "error": "Missing required parameter: text"}
    limit = int(args.get("max_chars", 4000))
    return {"summary": text[:limit], "truncated": len(text) > limit}


def _tool_search_files(args: dict, root: Path) -> dict:
    query = str(args.get("query", "")).strip()
    if not query:
        return {"success": False, "error": "Missing required parameter: query"}
    limit = int(args.get("max_results", 10))

    needle = query.lower()
    results = []
    for path in sorted(root.rglob("*")):
        if len(results) >= limit:
            break
        if not path.is_file() or path.suffix.lower() not in TEXT_SUFFIXES:
            continue
        try:
            lines = path.read_text(encoding="utf-8", errors="ignore").splitlines()
        except OSError:
            continue
        for number, line in enumerate(lines, start=1):
            if needle in line.lower():
                results.append({
                    "path": str(path.relative_to(root)),
                    "line": number,
                    "text": line.strip()[:200],
                })
                break
    return {"query": query, "count": len(results), "results": results}


def _tool_read_file(args: dict, root: Path) -> dict:
    path = str(args.get("path", "")).strip()
    if not path:
        return {"success": False, "error": "Missing required parameter: path"}
    target = (root / path).resolve()
    if not target.is_file():
        return {"success": False, "error": f"File not found: {path}"}
    return {"path": path, "content": target.read_text(encoding="utf-8", errors="replace")}


def _tool_file_write(args: dict, root: Path) -> str:
    path = str(args.get("path", "")).strip()
    content = str(args.get("content", ""))
    if not path:
        raise ValueError("Missing required parameter: path")
    target = root / path
    os.makedirs(target.parent.resolve(), exist_ok=True)
    with open(target, "w", encoding="utf-8") as fh:
        fh.write(content)
    return f"Wrote {len(content)} bytes to {path}."


def _tool_http_post(args: dict) -> dict:
    url = str(args.get("url", "")).strip()
    payload = args.get("payload", {})
    if not url:
        return {"success": False, "error": "Missing required parameter: url"}
    response = httpx.post(url, json=payload, timeout=10)
    return {
        "url": url,
        "status_code": response.status_code,
        "bytes": len(response.content),
        "success": response.is_success,
        "error": None if response.is_success else f"POST {url} → {response.status_code}",
    }


def build_catalog(root: str | Path = ".") -> LocalCatalog:
    """Register the built-in tools. File tools are rooted at `root`."""
    base = Path(root).resolve()
    catalog = LocalCatalog()

    catalog.add(
        "echo",
        _tool_echo,
        "Return the message unchanged.",
        {"type": "object", "properties": {"message": {"type": "string", "description": "Text to echo"}},
         "required": ["message"]},
    )
    catalog.add(
        "summarize",
        _tool_summarize,
        "Condense text to at most max_chars characters.",
        {"type": "object",
         "properties": {
             "text": {"type": "string", "description": "Text to summarize"},
             "max_chars": {"type": "integer", "description": "Upper bound on summary length"},
         },
         "required": ["text"]},
        category="text",
    )
    catalog.add(
        "search_files",
        lambda args: _tool_search_files(args, base),
        "Find text files whose contents mention the query.",
        {"type": "object",
         "properties": {
             "query": {"type": "string", "description": "Case-insensitive text to look for"},
             "max_results": {"type": "integer", "description": "Maximum number of files returned"},
         },
         "required": ["query"]},
        category="files",
    )
    catalog.add(
        "read_file",
        lambda args: _tool_read_file(args, base),
        "Read a text file.",
        {"type": "object", "properties": {"path": {"type": "string", "description": "File path"}},
         "required": ["path"]},
        category="files",
    )
    catalog.add(
        "file_write",
        lambda args: _tool_file_write(args, base),
        "Write content to a file, creating parent directories.",
        {"type": "object",
         "properties": {
             "path": {"type": "string", "description": "Destination file path"},
             "content": {"type": "string", "description": "Full file contents"},
         },
         "required": ["path", "content"]},
        category="files",
    )
    catalog.add(
        "http_post",
        _tool_http_post,
        "POST a JSON payload to a URL.",
        {"type": "object",
         "properties": {
             "url": {"type": "string", "description": "Target URL"},
             "payload": {"type": "object", "description": "JSON body"},
         },
         "required": ["url"]},
        category="network",
    )
    return catalog
