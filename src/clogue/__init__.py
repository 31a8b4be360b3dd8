"""Browse local Claude Code conversation transcripts in a web page."""

import asyncio
import html
import json
import logging
import tempfile
import threading
import webbrowser
from datetime import datetime, timezone
from pathlib import Path

import click
from click_default_group import DefaultGroup
from jinja2 import Environment, PackageLoader
import markdown
import questionary
import uvicorn

from clogue.paths import project_labels, reconstruct_path

__version__ = "0.3.0"

logger = logging.getLogger(__name__)

# Set up Jinja2 environment
_jinja_env = Environment(
    loader=PackageLoader("clogue", "templates"),
    autoescape=True,
)

# Load macros template and expose macros
_macros_template = _jinja_env.get_template("macros.html")
_macros = _macros_template.module


def get_template(name):
    """Get a Jinja2 template by name."""
    return _jinja_env.get_template(name)


PREVIEW_LENGTH = 100
NO_PREVIEW = "No preview available"


class TranscriptNotFound(LookupError):
    """Raised when a project or conversation does not exist in the store."""

    pass


def default_projects_dir():
    """Return ~/.claude/projects, where Claude Code keeps its transcripts."""
    return Path.home() / ".claude" / "projects"


def extract_text_from_content(content):
    """Extract plain text from message content.

    Handles both string content (older format) and array content (newer format).

    Args:
        content: Either a string or a list of content blocks like
                 [{"type": "text", "text": "..."}, {"type": "image", ...}]

    Returns:
        The extracted text as a string, or empty string if no text found.
    """
    if isinstance(content, str):
        return content.strip()
    elif isinstance(content, list):
        texts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text", "")
                if text:
                    texts.append(text)
        return " ".join(texts).strip()
    return ""


def _check_name(name, kind):
    if not name or name in (".", "..") or "/" in name or "\\" in name or "\0" in name:
        raise TranscriptNotFound(f"Invalid {kind} name: {name!r}")


def resolve_project_dir(projects_dir, name):
    """Return the folder for project ``name``, or raise TranscriptNotFound."""
    _check_name(name, "project")
    project_dir = Path(projects_dir) / name
    if not project_dir.is_dir():
        raise TranscriptNotFound(f"Project not found: {name}")
    return project_dir


def resolve_conversation_file(project_dir, conversation_id):
    """Return the JSONL file for ``conversation_id``, or raise TranscriptNotFound."""
    _check_name(conversation_id, "conversation")
    filepath = Path(project_dir) / f"{conversation_id}.jsonl"
    if not filepath.is_file():
        raise TranscriptNotFound(f"Conversation not found: {conversation_id}")
    return filepath


def _iter_jsonl(filepath):
    """Yield parsed objects from a JSONL file, skipping blank and malformed lines."""
    with open(filepath, "r", encoding="utf-8", errors="replace") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as e:
                logger.debug("Skipping malformed line %s:%d: %s", filepath, lineno, e)
                continue
            if isinstance(obj, dict):
                yield obj


def _preview_from_entry(obj, max_length=PREVIEW_LENGTH):
    """Return preview text for a user entry, or None if it has none."""
    if obj.get("type") != "user" or obj.get("isMeta"):
        return None
    content = (obj.get("message") or {}).get("content")
    if not content:
        return None
    # Messages made only of tool results are not typed by the user
    if isinstance(content, list) and all(
        isinstance(b, dict) and b.get("type") == "tool_result" for b in content
    ):
        return None
    text = extract_text_from_content(content)
    if not text or text.startswith("<"):
        return None
    if len(text) > max_length:
        return text[: max_length - 3] + "..."
    return text


def scan_conversation(filepath):
    """Read a JSONL transcript once and collect its listing metadata.

    Returns a dict with preview, message_count (non-empty lines) and
    is_sidechain.
    """
    filepath = Path(filepath)
    preview = None
    message_count = 0
    is_sidechain = filepath.name.startswith("agent-")
    first = True

    with open(filepath, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            message_count += 1
            if preview is not None and not first:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(obj, dict):
                continue
            if first:
                is_sidechain = is_sidechain or bool(obj.get("isSidechain"))
                first = False
            if preview is None:
                preview = _preview_from_entry(obj)

    return {
        "preview": preview or NO_PREVIEW,
        "message_count": message_count,
        "is_sidechain": is_sidechain,
    }


def is_warmup_preview(preview):
    return preview.strip().lower() == "warmup"


def first_user_preview(filepath):
    """Return the preview of a transcript without reading past the first prompt."""
    for obj in _iter_jsonl(filepath):
        preview = _preview_from_entry(obj)
        if preview is not None:
            return preview
    return NO_PREVIEW


def count_conversations(project_dir):
    """Count the conversations list_conversations shows by default (no warmups)."""
    return sum(
        1
        for filepath in Path(project_dir).glob("*.jsonl")
        if not is_warmup_preview(first_user_preview(filepath))
    )


def find_projects(projects_dir):
    """Return the project folders under ``projects_dir``, sorted by name."""
    projects_dir = Path(projects_dir)
    if not projects_dir.is_dir():
        return []
    return sorted(entry for entry in projects_dir.iterdir() if entry.is_dir())


async def list_projects(projects_dir, home_dir=None):
    """List every project in the store with its reconstructed path.

    Folder names are decoded concurrently, one decode per project, and the
    store is read in worker threads. Each dict has name, fullPath, components,
    projectName, parentPath, verified and conversationCount (warmups excluded).
    """
    if home_dir is None:
        home_dir = str(Path.home())
    folders = await asyncio.to_thread(find_projects, projects_dir)
    results, counts = await asyncio.gather(
        asyncio.gather(*(reconstruct_path(folder.name, home_dir) for folder in folders)),
        asyncio.gather(
            *(asyncio.to_thread(count_conversations, folder) for folder in folders)
        ),
    )

    projects = []
    for folder, result, count in zip(folders, results, counts):
        if not result.verified:
            logger.debug("Could not verify %s, showing %s", folder.name, result.full_path)
        project_name, parent_path = project_labels(result)
        projects.append(
            {
                "name": folder.name,
                "fullPath": result.full_path,
                "components": list(result.components),
                "projectName": project_name,
                "parentPath": parent_path,
                "verified": result.verified,
                "conversationCount": count,
            }
        )

    projects.sort(key=lambda p: (p["parentPath"].lower(), p["projectName"].lower()))
    return projects


def list_conversations(project_dir, include_warmup=False):
    """List the conversations of one project folder, most recent first.

    Warmup conversations are left out unless ``include_warmup`` is set.
    """
    conversations = []
    for filepath in Path(project_dir).glob("*.jsonl"):
        stat = filepath.stat()
        info = scan_conversation(filepath)
        is_warmup = is_warmup_preview(info["preview"])
        if is_warmup and not include_warmup:
            continue
        modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        conversations.append(
            (
                stat.st_mtime,
                {
                    "id": filepath.stem,
                    "filename": filepath.name,
                    "preview": info["preview"],
                    "messageCount": info["message_count"],
                    "modified": modified.isoformat(),
                    "size": stat.st_size,
                    "isWarmup": is_warmup,
                    "isSidechain": info["is_sidechain"],
                },
            )
        )

    conversations.sort(key=lambda c: c[0], reverse=True)
    return [conversation for _, conversation in conversations]


def read_conversation(project_dir, conversation_id):
    """Return the user and assistant entries of a conversation in file order."""
    filepath = resolve_conversation_file(project_dir, conversation_id)
    return [
        obj for obj in _iter_jsonl(filepath) if obj.get("type") in ("user", "assistant")
    ]


def find_recent_conversations(projects_dir, limit=10):
    """Return (project folder, conversation dict) pairs across all projects.

    Sorted by modification time, most recent first. Warmup conversations are
    skipped.
    """
    results = []
    for project_dir in find_projects(projects_dir):
        for conversation in list_conversations(project_dir):
            results.append((project_dir, conversation))
    results.sort(key=lambda r: r[1]["modified"], reverse=True)
    return results[:limit]


def format_json(obj):
    try:
        if isinstance(obj, str):
            obj = json.loads(obj)
        formatted = json.dumps(obj, indent=2, ensure_ascii=False)
        return f'<pre class="json">{html.escape(formatted)}</pre>'
    except (json.JSONDecodeError, TypeError):
        return f"<pre>{html.escape(str(obj))}</pre>"


def render_markdown_text(text):
    if not text:
        return ""
    return markdown.markdown(text, extensions=["fenced_code", "tables"])


def render_content_block(block):
    if not isinstance(block, dict):
        return f"<p>{html.escape(str(block))}</p>"
    block_type = block.get("type", "")
    if block_type == "text":
        return _macros.text_block(render_markdown_text(block.get("text", "")))
    elif block_type == "thinking":
        return _macros.thinking(render_markdown_text(block.get("thinking", "")))
    elif block_type == "tool_use":
        input_json = json.dumps(block.get("input", {}), indent=2, ensure_ascii=False)
        return _macros.tool_use(block.get("name", "Unknown tool"), input_json)
    elif block_type == "tool_result":
        content = block.get("content", "")
        if isinstance(content, str):
            content_html = f"<pre>{html.escape(content)}</pre>"
        else:
            content_html = format_json(content)
        return _macros.tool_result(
            block.get("tool_use_id", ""), content_html, block.get("is_error", False)
        )
    elif block_type == "image":
        source = block.get("source", {})
        return _macros.image_block(
            source.get("media_type", "image/png"), source.get("data", "")
        )
    return format_json(block)


def render_message_content(message):
    if not message or not message.get("content"):
        return "<p><em>No content</em></p>"
    content = message["content"]
    if isinstance(content, str):
        return render_markdown_text(content)
    if isinstance(content, list):
        return "".join(render_content_block(block) for block in content)
    return format_json(content)


def message_role(entry):
    """Return user, assistant or tool_result for a transcript entry.

    User entries made only of tool results are shown as tool_result.
    """
    message = entry.get("message") or {}
    role = message.get("role") or entry.get("type")
    content = message.get("content")
    if (
        role == "user"
        and isinstance(content, list)
        and content
        and all(isinstance(b, dict) and b.get("type") == "tool_result" for b in content)
    ):
        return "tool_result"
    return role


def format_timestamp(timestamp):
    if not timestamp:
        return ""
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return timestamp
    return parsed.strftime("%Y-%m-%d %H:%M:%S")


def render_conversation_html(entries, title, subtitle=""):
    """Render conversation entries to a standalone HTML page."""
    messages = []
    for entry in entries:
        messages.append(
            {
                "role": message_role(entry),
                "timestamp": format_timestamp(entry.get("timestamp", "")),
                "content_html": render_message_content(entry.get("message")),
                "is_meta": bool(entry.get("isMeta")),
                "is_sidechain": bool(entry.get("isSidechain")),
            }
        )
    template = get_template("conversation.html")
    return template.render(
        title=title,
        subtitle=subtitle,
        messages=messages,
        message_count=len(messages),
    )


async def export_conversation_html(projects_dir, project, conversation_id, home_dir=None):
    """Render one stored conversation, titled with its reconstructed project path."""
    project_dir = await asyncio.to_thread(resolve_project_dir, projects_dir, project)
    entries = await asyncio.to_thread(read_conversation, project_dir, conversation_id)
    result = await reconstruct_path(project, home_dir or str(Path.home()))
    return render_conversation_html(entries, title=result.full_path, subtitle=conversation_id)


def _projects_dir_option(func):
    return click.option(
        "-d",
        "--projects-dir",
        type=click.Path(file_okay=False, path_type=Path),
        envvar="CLOGUE_PROJECTS_DIR",
        help="Claude projects folder (default: ~/.claude/projects).",
    )(func)


@click.group(cls=DefaultGroup, default="serve", default_if_no_args=True)
@click.version_option(None, "-v", "--version", package_name="clogue")
def cli():
    """Browse local Claude Code conversation transcripts."""
    pass


@cli.command("serve")
@_projects_dir_option
@click.option(
    "--host",
    default="127.0.0.1",
    envvar="CLOGUE_HOST",
    show_default=True,
    help="Interface to bind.",
)
@click.option(
    "-p",
    "--port",
    type=int,
    default=3000,
    envvar="CLOGUE_PORT",
    show_default=True,
    help="Port to listen on.",
)
@click.option(
    "--log-level",
    type=click.Choice(["critical", "error", "warning", "info", "debug"]),
    default="info",
    envvar="CLOGUE_LOG_LEVEL",
    show_default=True,
)
@click.option(
    "--open",
    "open_browser",
    is_flag=True,
    help="Open the viewer in your default browser once the server starts.",
)
def serve_cmd(projects_dir, host, port, log_level, open_browser):
    """Run the transcript viewer web server."""
    from clogue.server import Settings, create_app

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    projects_dir = projects_dir or default_projects_dir()
    if not projects_dir.exists():
        click.echo(f"Projects folder not found: {projects_dir}")

    app = create_app(Settings(projects_dir=projects_dir))
    url = f"http://{host}:{port}/"
    click.echo(f"Clogue server running at {url}")
    click.echo(f"Exploring Claude projects from: {projects_dir}")

    if open_browser:
        threading.Timer(1.0, webbrowser.open, args=(url,)).start()

    uvicorn.run(app, host=host, port=port, log_level=log_level)


@cli.command("projects")
@_projects_dir_option
@click.option("--home", help="Home directory used to detect dotted usernames.")
def projects_cmd(projects_dir, home):
    """List projects with their reconstructed paths."""
    projects_dir = projects_dir or default_projects_dir()
    if not projects_dir.exists():
        raise click.ClickException(f"Projects folder not found: {projects_dir}")

    projects = asyncio.run(list_projects(projects_dir, home_dir=home))
    if not projects:
        click.echo("No projects found.")
        return

    for project in projects:
        flag = "" if project["verified"] else "  (unverified)"
        click.echo(
            f"{project['fullPath']}{flag}  [{project['conversationCount']} conversations]"
        )
        click.echo(f"    {project['name']}")


@cli.command("decode")
@click.argument("encoded_name")
@click.option("--home", help="Home directory used to detect dotted usernames.")
def decode_cmd(encoded_name, home):
    """Reconstruct the real path behind an encoded project folder name.

    Names start with a dash, so put them after "--":

        clogue decode -- -home-dev-my-project
    """
    result = asyncio.run(reconstruct_path(encoded_name, home or str(Path.home())))
    click.echo(result.full_path)
    for component in result.components:
        click.echo(f"  {component}")
    if not result.verified:
        click.echo("Some segments could not be confirmed on disk.", err=True)


@cli.command("export")
@click.argument("project", required=False)
@click.argument("conversation", required=False)
@_projects_dir_option
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Output HTML file. If not specified, writes to temp dir and opens in browser.",
)
@click.option(
    "--open",
    "open_browser",
    is_flag=True,
    help="Open the exported file in your default browser (default if no -o specified).",
)
@click.option(
    "--limit",
    default=10,
    help="Maximum number of conversations to choose from (default: 10)",
)
def export_cmd(project, conversation, projects_dir, output, open_browser, limit):
    """Export one conversation to a standalone HTML file.

    Without PROJECT and CONVERSATION, pick a recent conversation interactively.
    """
    projects_dir = projects_dir or default_projects_dir()
    if not projects_dir.exists():
        raise click.ClickException(f"Projects folder not found: {projects_dir}")

    if project is None or conversation is None:
        recent = find_recent_conversations(projects_dir, limit=limit)
        if not recent:
            click.echo("No local conversations found.")
            return
        choices = []
        for project_dir, conv in recent:
            date_str = conv["modified"][:16].replace("T", " ")
            size_kb = conv["size"] / 1024
            preview = conv["preview"]
            if len(preview) > 50:
                preview = preview[:47] + "..."
            display = f"{date_str}  {size_kb:5.0f} KB  {preview}"
            choices.append(
                questionary.Choice(title=display, value=(project_dir.name, conv["id"]))
            )
        selected = questionary.select(
            "Select a conversation to export:",
            choices=choices,
        ).ask()
        if selected is None:
            click.echo("No conversation selected.")
            return
        project, conversation = selected

    try:
        content = asyncio.run(export_conversation_html(projects_dir, project, conversation))
    except TranscriptNotFound as e:
        raise click.ClickException(str(e))

    auto_open = output is None
    if output is None:
        output = Path(tempfile.gettempdir()) / f"clogue-{conversation}.html"
    output.write_text(content, encoding="utf-8")
    click.echo(f"Output: {output.resolve()}")

    if open_browser or auto_open:
        webbrowser.open(output.resolve().as_uri())


def main():
    cli()
