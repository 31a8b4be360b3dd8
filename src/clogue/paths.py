"""Reconstruct real filesystem paths from Claude Code project folder names.

Claude Code stores each project's transcripts in a folder named after the
project's absolute path with every separator flattened to a dash:

    /home/dev/github.com/org/my-repo -> -home-dev-github-com-org-my-repo

The encoding is lossy. A dash in the folder name may have been a ``/``, a
literal ``-`` or a ``.``, so decoding probes the live filesystem one segment
at a time and keeps whichever grouping of tokens actually exists.

The search is greedy and never backtracks. At each position a dot-join of the
next two tokens is tried first, then dash-joins from shortest to longest, and
finally the single token is taken unverified. Segments containing more than
one dot (``sub.example.co.uk``) are not recovered.
"""

import asyncio
import os
from typing import NamedTuple

DELIMITER = "-"


class ReconstructedPath(NamedTuple):
    """Best-effort reconstruction of an encoded project folder name.

    ``verified`` is False when at least one segment could not be confirmed on
    disk and was taken as a bare token. Such paths are for display only.
    """

    full_path: str
    components: tuple
    verified: bool = True


async def path_exists(path):
    """Return True if ``path`` can be stat'd.

    Missing paths, permission errors and invalid names all report False.
    """
    return await asyncio.to_thread(os.path.exists, path)


def encode_path(abs_path):
    """Convert an absolute path to the Claude Code folder name.

    /home/dev/my-project -> -home-dev-my-project
    """
    return abs_path.replace("/", DELIMITER)


def _resolve_root(tokens, home_dir):
    """Return (root components, number of tokens consumed)."""
    if tokens[0] == "Users" and len(tokens) >= 3:
        username = f"{tokens[1]}.{tokens[2]}"
        if home_dir and home_dir.rstrip("/") == f"/Users/{username}":
            return ["Users", username], 3
    return [tokens[0]], 1


async def reconstruct_path(encoded_name, home_dir, exists=path_exists):
    """Decode ``encoded_name`` into a :class:`ReconstructedPath`.

    Args:
        encoded_name: Folder name from ~/.claude/projects/, e.g. "-home-dev-app".
        home_dir: The user's home directory, used to recognise usernames
            with a dot in them (/Users/first.last).
        exists: Coroutine function answering "does this path exist?".
            Probes are awaited one at a time, in order.
    """
    remainder = encoded_name[1:] if encoded_name.startswith(DELIMITER) else encoded_name
    if not remainder:
        return ReconstructedPath("/", ("/",), True)

    tokens = remainder.split(DELIMITER)
    components, i = _resolve_root(tokens, home_dir)
    current = "/" + "/".join(components)
    verified = True

    while i < len(tokens):
        segment = None
        consumed = 0

        if i + 1 < len(tokens):
            candidate = f"{tokens[i]}.{tokens[i + 1]}"
            if await exists(f"{current}/{candidate}"):
                segment, consumed = candidate, 2

        if segment is None:
            for end in range(i + 1, len(tokens) + 1):
                candidate = DELIMITER.join(tokens[i:end])
                if not candidate:
                    continue
                if await exists(f"{current}/{candidate}"):
                    segment, consumed = candidate, end - i
                    break

        if segment is None:
            segment, consumed = tokens[i], 1
            verified = False

        components.append(segment)
        current = f"{current}/{segment}"
        i += consumed

    return ReconstructedPath(current, tuple(components), verified)


def project_labels(result):
    """Split a reconstruction into (project name, parent path) for display.

    Trailing empty components (from a name ending in a dash) are skipped.
    """
    if result.full_path == "/":
        return "/", ""
    components = list(result.components)
    while len(components) > 1 and not components[-1]:
        components.pop()
    parent = "/" + "/".join(components[:-1])
    return components[-1], parent
