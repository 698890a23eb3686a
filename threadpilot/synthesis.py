"""Tool-call synthesis for models that answer in prose instead of calling tools.

When an agent-mode request clearly needs tools but the model replies with
text only, the orchestrator derives a first tool call from the user's wording
and runs it on the model's behalf.
"""

import re
from typing import Any

_STOP_WORDS = frozenset(
    {"the", "a", "an", "to", "for", "of", "in", "on", "at", "by", "with", "can", "you", "add", "create", "make", "do"}
)

_ACTION_WORDS = (
    "add", "create", "edit", "delete", "remove", "update", "modify", "change", "make",
    "write", "build", "implement", "fix", "run", "execute", "install", "setup", "configure",
)
_NON_ACTION_PREFIXES = ("explain", "what", "how", "why")
_CODEBASE_WORDS = (
    "codebase", "code base", "repository", "repo", "project", "endpoint", "endpoints",
    "api", "route", "routes", "files", "structure", "architecture", "what is", "about",
)
_WEB_WORDS = (
    "search the web", "search online", "check the web", "check the internet", "check internet",
    "look up", "google", "duckduckgo", "browse url", "fetch url", "open url",
)
_SYNTH_WEB_WORDS = (
    "search the web", "search online", "look up", "check the web", "check the internet",
    "check internet", "look it up", "find information", "tell me what you know about",
    "what do you know about", "google", "duckduckgo",
)
_RECENCY_WORDS = ("latest", "current", "recent", "2024", "2025")
_INLINE_TOOL_TAGS = (
    "<read_file>", "<edit_file>", "<search_for_files>", "<create_file",
    "<run_command>", "<web_search>", "<browse_url>",
)

_URL_RE = re.compile(r"(https?://[^\s]+)", re.IGNORECASE)
_FILE_RE = re.compile(r"([\w/.\-]+\.\w+)", re.IGNORECASE)

_ACTION_PHRASES = {
    "search_for_files": "finding relevant files",
    "read_file": "reading the file",
    "web_search": "searching the web",
    "browse_url": "fetching the web page",
}


def extract_keywords(text: str) -> list[str]:
    words = [w for w in text.split() if len(w) > 2]
    return [w for w in words if w.lower() not in _STOP_WORDS][:5]


def _asks_about_recent_facts(lower: str, starters: tuple[str, ...]) -> bool:
    return any(s in lower for s in starters) and any(w in lower for w in _RECENCY_WORDS)


def is_image_analysis_query(request: str, has_images: bool) -> bool:
    if not has_images:
        return False
    lower = request.lower()
    return (
        len(request.strip()) < 20
        or "image" in lower
        or ("what" in lower and ("about" in lower or "show" in lower))
        or "describe" in lower
        or "analyze" in lower
    )


def should_use_tools(request: str, reply_text: str, has_images: bool = False) -> bool:
    """Whether a text-only reply to ``request`` should have called a tool."""
    lower = request.lower()

    is_action = any(w in lower for w in _ACTION_WORDS) and not lower.startswith(_NON_ACTION_PREFIXES)
    is_codebase = (
        any(w in lower for w in _CODEBASE_WORDS)
        and ("what" in lower or "how many" in lower or "about" in lower)
        and not (has_images and ("image" in lower or "this" in lower or "that" in lower))
    )
    is_web = (
        any(w in lower for w in _WEB_WORDS)
        or ("search for" in lower and ("on the web" in lower or "on the internet" in lower))
        or "tell me what you know about" in lower
        or "what do you know about" in lower
        or _asks_about_recent_facts(lower, ("what is", "who is", "when did"))
    )
    if not (is_action or is_codebase or is_web):
        return False

    reply = reply_text.lower()
    if any(tag in reply for tag in _INLINE_TOOL_TAGS):
        return False
    return not is_image_analysis_query(request, has_images)


def synthesize_tool_call(request: str) -> tuple[str, dict[str, Any]] | None:
    """Derive ``(tool_name, raw_params)`` from the wording of a request."""
    lower = request.lower()
    keywords = extract_keywords(request)

    if (
        any(w in lower for w in _SYNTH_WEB_WORDS)
        or ("search for" in lower and ("on the web" in lower or "on the internet" in lower))
        or _asks_about_recent_facts(lower, ("what is", "what are", "who is", "when did"))
    ):
        query = " ".join(keywords) if keywords else request
        if "tell me what you know about" in lower or "what do you know about" in lower:
            about = re.search(r"about\s+(.+)", request, re.IGNORECASE)
            if about:
                query = about.group(1).strip()
        return "web_search", {"query": query, "k": "5"}

    if (
        any(w in lower for w in ("open url", "fetch url", "browse url", "read url", "get content from"))
        or (re.search(r"https?://", lower) and any(w in lower for w in ("read", "open", "fetch")))
    ):
        url = _URL_RE.search(request)
        if url:
            return "browse_url", {"url": url.group(1)}

    if (
        any(w in lower for w in ("codebase", "code base", "repository", "repo"))
        or ("what" in lower and ("project" in lower or "about" in lower))
        or ("how many" in lower and ("endpoint" in lower or "api" in lower))
    ):
        query = " ".join(keywords) if keywords else "readme package.json server api route endpoint"
        return "search_for_files", {"query": query}

    if "endpoint" in lower or "route" in lower or "api" in lower:
        filtered = [k for k in keywords if k.lower() not in {"dummy", "endpoint", "backend"}]
        return "search_for_files", {"query": " ".join(filtered) if filtered else "server route api endpoint"}

    if "file" in lower and any(w in lower for w in ("create", "add", "make")):
        name = next((k for k in keywords if "." in k or len(k) > 3), "newfile")
        return "create_file_or_folder", {"uri": name if name.startswith("/") else f"/{name}", "type": "file"}

    if any(w in lower for w in ("read", "show", "view")):
        match = _FILE_RE.search(request)
        if match:
            return "read_file", {"uri": match.group(1), "start_line": "1", "end_line": "100"}
    elif any(w in lower for w in ("edit", "modify", "change", "update")):
        return "search_for_files", {"query": " ".join(keywords) or "file"}

    return "search_for_files", {"query": " ".join(keywords) or request[:50]}


def action_phrase(tool_name: str) -> str:
    return _ACTION_PHRASES.get(tool_name, "taking action")


def synthesis_notice(tool_name: str) -> str:
    return f"I'll help you with that. Let me start by {action_phrase(tool_name)}..."
