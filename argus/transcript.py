"""
Transcript parser.

Reads an append-only JSONL transcript and extracts what the monitor needs to
know about a session: the first task it was given, whether it is waiting on a
question right now, what it is currently doing and which workspace it runs in.

Everything here is pure and total. Each line is parsed on its own and skipped
if it is not a JSON object, unreadable files produce an empty result, and no
function in this module raises on bad input.
"""
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from argus.utils import truncate

logger = logging.getLogger(__name__)

HEAD_BYTES = 64 * 1024
TAIL_BYTES = 256 * 1024
TASK_TEXT_LIMIT = 100

TASK_SCAN_LIMIT = 15
QUESTION_SCAN_LIMIT = 20
RATE_LIMIT_SCAN_LIMIT = 15
ACTIVITY_SCAN_LIMIT = 30
SERVER_SCAN_LIMIT = 30

QUESTION_TOOL = "AskUserQuestion"
PLAN_TOOLS = ("ExitPlanMode", "EnterPlanMode")
BLOCKING_TOOLS = (QUESTION_TOOL,) + PLAN_TOOLS

# System records that stop the session until a human acts
ACTION_REQUIRED_PATTERNS = [
    re.compile(r"prompt is too long", re.I),
    re.compile(r"context.*(too long|exceeded|overflow)", re.I),
    re.compile(r"requires? (your )?(permission|approval)", re.I),
    re.compile(r"do you want to (proceed|allow|continue)", re.I),
    re.compile(r"waiting for (your )?(permission|approval)", re.I),
]

RATE_LIMIT_PATTERNS = [
    re.compile(r"you['’]ve hit your (usage |rate )?limit", re.I),
    re.compile(r"rate limit(ed| exceeded)", re.I),
    re.compile(r"too many requests", re.I),
    re.compile(r"quota exceeded", re.I),
    re.compile(r"\boverloaded\b", re.I),
]

RESET_IN = re.compile(r"(?:in|after)\s+(\d+)\s*(minute|min|second|sec|hour|hr)s?\b", re.I)
RESET_AT = re.compile(r"(?:at|around)\s+(\d{1,2}):(\d{2})\s*(am|pm)?", re.I)
RESET_HOUR = re.compile(r"resets?\s+(\d{1,2})\s*(am|pm)\b", re.I)
DEFAULT_RATE_LIMIT_WAIT_MS = 5 * 60 * 1000

SERVER_COMMAND_PATTERNS = [
    re.compile(r"\bnpm run (dev|start|serve)\b", re.I),
    re.compile(r"\bnpx (vite|next)\b", re.I),
    re.compile(r"\bnode\s+[\w./]*server", re.I),
    re.compile(r"\bpython3?\s+-m\s+(flask|uvicorn|http\.server)", re.I),
    re.compile(r"\buvicorn\s+\S+", re.I),
    re.compile(r"\bcargo run\b", re.I),
    re.compile(r"\bgo run\b.*server", re.I),
    re.compile(r"\bdocker(-compose| compose)?\s+(up|run)\b", re.I),
]

SERVER_OUTPUT_PATTERNS = [
    (re.compile(r"listening on (?:port\s+)?(\d+)", re.I), "web"),
    (re.compile(r"server (?:is )?(?:running|started|listening)", re.I), "web"),
    (re.compile(r"local:\s+https?://localhost[:\d]*", re.I), "dev"),
    (re.compile(r"ready in \d+(?:ms|s)", re.I), "dev"),
    (re.compile(r"started (?:development )?server", re.I), "dev"),
]
PORT_PATTERN = re.compile(r":\s*(\d{4,5})\b")


@dataclass
class RateLimitInfo:
    reset_at: int
    message: str


@dataclass
class ServerInfo:
    kind: str
    port: Optional[int] = None


@dataclass
class TranscriptInfo:
    """What one transcript says about its session. Every field is optional."""
    session_id: Optional[str] = None
    path: Optional[str] = None
    modified_at: Optional[int] = None
    workspace_path: Optional[str] = None
    first_user_task: Optional[str] = None
    last_user_message: Optional[str] = None
    pending_question: Optional[str] = None
    recent_activity: Optional[str] = None
    rate_limit: Optional[RateLimitInfo] = None
    server: Optional[ServerInfo] = None


@dataclass
class Record:
    """A transcript line reduced to the parts the heuristics look at."""
    role: Optional[str]
    blocks: List[dict]
    text: str
    cwd: Optional[str]

    def tool_calls(self):
        for block in self.blocks:
            if block.get("type") in ("tool_use", "toolCall") and isinstance(block.get("name"), str):
                payload = block.get("input")
                if payload is None:
                    payload = block.get("arguments")
                yield block["name"], payload if isinstance(payload, dict) else {}

    def text_blocks(self) -> List[str]:
        texts = [b.get("text") for b in self.blocks if b.get("type") == "text"]
        return [t for t in texts if isinstance(t, str) and t.strip()]


# ----------------------------------------------------------------------
# Record normalization
# ----------------------------------------------------------------------

def _role_of(entry: dict, message) -> Optional[str]:
    kind = entry.get("type")
    if kind in ("user", "assistant", "system"):
        return kind
    if isinstance(message, dict):
        role = message.get("role")
        if role in ("user", "assistant", "system"):
            return role
        if role == "toolResult":
            return "user"
    return None


def parse_record(line: str) -> Optional[Record]:
    """Parse a single JSONL line. Returns None for anything that is not a record."""
    line = line.strip()
    if not line:
        return None
    try:
        entry = json.loads(line)
    except ValueError:
        return None
    if not isinstance(entry, dict):
        return None

    message = entry.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if content is None and "content" in entry:
        content = entry.get("content")

    blocks: List[dict] = []
    text = ""
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        blocks = [b for b in content if isinstance(b, dict)]
        first = next((b.get("text") for b in blocks
                      if b.get("type") == "text" and isinstance(b.get("text"), str)), None)
        text = first or ""
    elif isinstance(message, str):
        text = message
    elif entry.get("type") == "system" and isinstance(message, dict):
        text = json.dumps(message)

    cwd = entry.get("cwd")
    return Record(
        role=_role_of(entry, message),
        blocks=blocks,
        text=text,
        cwd=cwd if isinstance(cwd, str) and cwd.strip() else None,
    )


def parse_records(lines) -> List[Record]:
    records = []
    for line in lines:
        record = parse_record(line)
        if record is not None:
            records.append(record)
    return records


# ----------------------------------------------------------------------
# Extractors
# ----------------------------------------------------------------------

def extract_workspace_path(records: List[Record]) -> Optional[str]:
    for record in records:
        if record.cwd:
            return record.cwd
    return None


def _user_text(record: Record) -> Optional[str]:
    if record.role != "user":
        return None
    text = record.text.strip()
    return text or None


def extract_first_user_task(records: List[Record], limit: int = TASK_TEXT_LIMIT) -> Optional[str]:
    for record in records[:TASK_SCAN_LIMIT]:
        text = _user_text(record)
        if text:
            return truncate(text, limit)
    return None


def extract_last_user_message(records: List[Record], limit: int = TASK_TEXT_LIMIT) -> Optional[str]:
    for record in reversed(records):
        text = _user_text(record)
        if text:
            return truncate(text, limit)
    return None


def _blocking_question(name: str, payload: dict, record: Record) -> str:
    text = None
    if name == QUESTION_TOOL:
        questions = payload.get("questions")
        if isinstance(questions, list) and questions and isinstance(questions[0], dict):
            text = questions[0].get("question")
        if not text:
            text = payload.get("question")
    elif name == "ExitPlanMode":
        text = payload.get("plan")
    if not isinstance(text, str) or not text.strip():
        own = record.text_blocks()
        text = own[-1] if own else name
    return text.strip()


def extract_pending_question(records: List[Record]) -> Optional[str]:
    """
    Scan backward for a blocking interaction nobody has answered yet.

    A user record seen first means the human already replied. The literal
    question text is returned; there is no generic placeholder.
    """
    for record in list(reversed(records))[:QUESTION_SCAN_LIMIT]:
        if record.role == "user":
            return None
        if record.role == "assistant":
            for name, payload in record.tool_calls():
                if name in BLOCKING_TOOLS:
                    return _blocking_question(name, payload, record)
        elif record.role == "system" and record.text:
            for pattern in ACTION_REQUIRED_PATTERNS:
                if pattern.search(record.text):
                    return record.text.strip()
    return None


def _describe_tool(name: str, payload: dict) -> Optional[str]:
    if name == "TodoWrite":
        todos = payload.get("todos")
        if isinstance(todos, list):
            current = next((t for t in todos if isinstance(t, dict) and t.get("status") == "in_progress"), None)
            if current:
                for key in ("activeForm", "content"):
                    if isinstance(current.get(key), str) and current[key]:
                        return current[key]
        return None
    if name in ("Task", "Agent") and payload.get("description"):
        return f"Delegating: {payload['description']}"
    file_path = payload.get("file_path")
    if isinstance(file_path, str) and file_path:
        if name in ("Edit", "Write", "MultiEdit"):
            return f"Editing {os.path.basename(file_path)}"
        if name == "Read":
            return f"Reading {os.path.basename(file_path)}"
    if name == "Bash":
        description = payload.get("description")
        if isinstance(description, str) and description:
            return description[:60]
        command = payload.get("command")
        if isinstance(command, str) and command:
            return f"Running: {truncate(command, 40)}"
    pattern = payload.get("pattern")
    if isinstance(pattern, str) and pattern:
        if name == "Grep":
            return f'Searching for "{pattern[:30]}"'
        if name == "Glob":
            return f"Finding files: {pattern}"
    if name == "WebSearch":
        return "Searching the web"
    if name == "WebFetch":
        return "Fetching web content"
    if name == QUESTION_TOOL:
        questions = payload.get("questions")
        if isinstance(questions, list) and questions and isinstance(questions[0], dict):
            question = questions[0].get("question")
            if isinstance(question, str) and question:
                return question[:100]
    return None


def extract_recent_activity(records: List[Record]) -> Optional[str]:
    fallback = None
    for record in list(reversed(records))[:ACTIVITY_SCAN_LIMIT]:
        if record.role != "assistant":
            continue
        for block in record.blocks:
            kind = block.get("type")
            if kind == "thinking" and isinstance(block.get("thinking"), str):
                lines = [l for l in block["thinking"].strip().splitlines() if l.strip()]
                if lines:
                    return f"Thinking: {lines[-1].strip()[:120]}"
            elif kind == "text" and fallback is None and isinstance(block.get("text"), str):
                lines = [l for l in block["text"].strip().splitlines() if l.strip()]
                if lines:
                    fallback = lines[0].strip()[:100]
        for name, payload in record.tool_calls():
            description = _describe_tool(name, payload)
            if description:
                return description
    return fallback


def _parse_reset_time(text: str, now: datetime) -> int:
    match = RESET_IN.search(text)
    if match:
        amount = int(match.group(1))
        unit = match.group(2).lower()
        if unit.startswith("sec"):
            delta = timedelta(seconds=amount)
        elif unit.startswith("min"):
            delta = timedelta(minutes=amount)
        else:
            delta = timedelta(hours=amount)
        return int((now + delta).timestamp() * 1000)

    hour = minute = None
    meridiem = None
    match = RESET_AT.search(text)
    if match:
        hour, minute, meridiem = int(match.group(1)), int(match.group(2)), match.group(3)
    else:
        match = RESET_HOUR.search(text)
        if match:
            hour, minute, meridiem = int(match.group(1)), 0, match.group(2)
    if hour is not None and hour < 24 and minute < 60:
        if meridiem:
            meridiem = meridiem.lower()
            if meridiem == "pm" and hour < 12:
                hour += 12
            elif meridiem == "am" and hour == 12:
                hour = 0
        if hour < 24:
            reset = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
            if reset < now:
                reset += timedelta(days=1)
            return int(reset.timestamp() * 1000)

    return int(now.timestamp() * 1000) + DEFAULT_RATE_LIMIT_WAIT_MS


def extract_rate_limit(records: List[Record], now: Optional[datetime] = None) -> Optional[RateLimitInfo]:
    now = now or datetime.now()
    for record in list(reversed(records))[:RATE_LIMIT_SCAN_LIMIT]:
        if record.role == "user":
            break
        candidates = []
        if record.role == "system" and record.text:
            candidates.append(record.text)
        elif record.role == "assistant":
            candidates.extend(record.text_blocks())
        for text in candidates:
            if any(p.search(text) for p in RATE_LIMIT_PATTERNS):
                return RateLimitInfo(reset_at=_parse_reset_time(text, now), message=text[:100])
    return None


def extract_server(records: List[Record]) -> Optional[ServerInfo]:
    for record in list(reversed(records))[:SERVER_SCAN_LIMIT]:
        if record.role == "user":
            break
        if record.role == "assistant":
            for name, payload in record.tool_calls():
                command = payload.get("command")
                if name == "Bash" and isinstance(command, str) and payload.get("run_in_background"):
                    if any(p.search(command) for p in SERVER_COMMAND_PATTERNS):
                        return ServerInfo(kind="dev")
        elif record.role == "system" and record.text:
            for pattern, kind in SERVER_OUTPUT_PATTERNS:
                match = pattern.search(record.text)
                if match:
                    port = match.group(1) if match.groups() else None
                    if port is None:
                        found = PORT_PATTERN.search(record.text)
                        port = found.group(1) if found else None
                    return ServerInfo(kind=kind, port=int(port) if port else None)
    return None


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------

def _split_lines(data: bytes, drop_first: bool, drop_last: bool) -> List[str]:
    lines = data.decode("utf-8", errors="replace").split("\n")
    if drop_first and lines:
        lines = lines[1:]
    if drop_last and lines:
        lines = lines[:-1]
    return lines


def read_bounded(path, head_bytes: int = HEAD_BYTES, tail_bytes: int = TAIL_BYTES) -> Tuple[List[str], List[str]]:
    """
    Read at most head_bytes from the start and tail_bytes from the end.

    Lines cut by a chunk boundary are discarded. When the file fits in one
    chunk, head and tail are the same list. Raises OSError on I/O failure.
    """
    with open(path, "rb") as f:
        size = os.fstat(f.fileno()).st_size
        if size <= head_bytes + tail_bytes:
            lines = _split_lines(f.read(), False, False)
            return lines, lines
        head = _split_lines(f.read(head_bytes), False, True)
        f.seek(size - tail_bytes)
        tail = _split_lines(f.read(tail_bytes), True, False)
        return head, tail


def parse_lines(head: List[str], tail: Optional[List[str]] = None,
                task_limit: int = TASK_TEXT_LIMIT) -> TranscriptInfo:
    head_records = parse_records(head)
    tail_records = head_records if tail is None or tail is head else parse_records(tail)
    return TranscriptInfo(
        workspace_path=extract_workspace_path(head_records) or extract_workspace_path(tail_records),
        first_user_task=extract_first_user_task(head_records, task_limit),
        last_user_message=extract_last_user_message(tail_records, task_limit),
        pending_question=extract_pending_question(tail_records),
        recent_activity=extract_recent_activity(tail_records),
        rate_limit=extract_rate_limit(tail_records),
        server=extract_server(tail_records),
    )


def parse_bytes(data: bytes, task_limit: int = TASK_TEXT_LIMIT) -> TranscriptInfo:
    return parse_lines(data.decode("utf-8", errors="replace").split("\n"), task_limit=task_limit)


def parse(log_path, head_bytes: int = HEAD_BYTES, tail_bytes: int = TAIL_BYTES,
          task_limit: int = TASK_TEXT_LIMIT) -> TranscriptInfo:
    """Parse a transcript file. An unreadable file yields an empty result."""
    path = Path(log_path)
    try:
        modified_at = int(path.stat().st_mtime * 1000)
        head, tail = read_bounded(path, head_bytes, tail_bytes)
    except OSError as e:
        logger.debug(f"Could not read transcript {path}: {e}")
        return TranscriptInfo(session_id=path.stem, path=str(path))

    started = time.monotonic()
    info = parse_lines(head, tail, task_limit)
    info.session_id = path.stem
    info.path = str(path)
    info.modified_at = modified_at
    logger.debug(f"Parsed {path.name} in {(time.monotonic() - started) * 1000:.1f}ms")
    return info
