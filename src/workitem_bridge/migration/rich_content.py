"""Rich content conversions: test case steps and inline images.

Test case steps become the XML document stored in
``Microsoft.VSTS.TCM.Steps``. Each step holds two ``parameterizedString``
elements (action, expected result) whose HTML body is itself XML-escaped,
which is how the target stores formatted step text.

Inline images in source descriptions point at source attachment paths such
as ``/slm/attachment/<ObjectID>/<name>`` that mean nothing in the target.
During transformation each such ``src`` is replaced by a stable placeholder
token; once the attachments are uploaded the tokens are swapped for the
uploaded attachment URLs.
"""

import html
import re
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import parse_qs, quote, unquote, urlparse

from workitem_bridge.models import SourceAttachment, SourceTestStep

STEPS_FIELD = "Microsoft.VSTS.TCM.Steps"
DESCRIPTION_FIELD = "System.Description"

PLACEHOLDER_PREFIX = "__ATTACHMENT_"
PLACEHOLDER_SUFFIX = "__"

_IMG_SRC = re.compile(r"""(<img\b[^>]*?\bsrc\s*=\s*)(["'])(.*?)\2""", re.IGNORECASE | re.DOTALL)
_ATTACHMENT_PATH = re.compile(r"/attachment/(\d+)(?:/|$)", re.IGNORECASE)
_PLACEHOLDER = re.compile(r"__ATTACHMENT_([A-Za-z0-9%.~-]+(?:_[A-Za-z0-9%.~-]+)*)__")
_LINE_BREAK_TAGS = re.compile(r"<br\s*/?>|</p>|</div>|</li>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")
_CONTROL_CHARS = re.compile(r"[\x00-\x09\x0b\x0c\x0e-\x1f\x7f]")


# Test case steps


def step_text(raw: str | None) -> str:
    """Reduce a step's HTML to plain text, keeping line breaks."""
    if not raw:
        return ""
    text = html.unescape(raw)
    text = _LINE_BREAK_TAGS.sub("\n", text)
    text = _TAG.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text.strip())
    return _CONTROL_CHARS.sub("", text)


def _parameterized(text: str) -> str:
    body = "<DIV><P>" + html.escape(text, quote=False).replace("\n", "<BR/>") + "</P></DIV>"
    return f'<parameterizedString isformatted="true">{html.escape(body)}</parameterizedString>'


def build_test_steps_xml(steps: Iterable[SourceTestStep]) -> str:
    """Render source test steps as a ``Microsoft.VSTS.TCM.Steps`` document.

    Steps are ordered by their source index and renumbered from 1. Steps
    with an expected result are validation steps, the rest action steps.
    Returns an empty string when there are no steps.
    """
    ordered = sorted(steps, key=lambda s: s.index)
    if not ordered:
        return ""

    parts = [f'<steps id="0" last="{len(ordered)}">']
    for number, step in enumerate(ordered, start=1):
        action = step_text(step.input)
        expected = step_text(step.expected_result)
        kind = "ValidateStep" if expected else "ActionStep"
        parts.append(f'<step id="{number}" type="{kind}">')
        parts.append(_parameterized(action))
        parts.append(_parameterized(expected))
        parts.append("<description/></step>")
    parts.append("</steps>")
    return "".join(parts)


# Inline images


def placeholder(key: str) -> str:
    return f"{PLACEHOLDER_PREFIX}{key}{PLACEHOLDER_SUFFIX}"


def name_key(name: str) -> str:
    """Placeholder key for a file name (percent-encoded, so tokens stay one word)."""
    return quote(unquote(name), safe="")


def _image_key(src: str) -> str | None:
    """Placeholder key for a source image path; None for external images."""
    src = html.unescape(src.strip())
    if not src or src.startswith(("http://", "https://", "data:", PLACEHOLDER_PREFIX)):
        return None
    match = _ATTACHMENT_PATH.search(src)
    if match:
        return match.group(1)
    name = src.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0]
    return name_key(name) if name else None


def insert_placeholders(value: str) -> str:
    """Replace ``src`` of images that point at source attachments with placeholders."""

    def _replace(match: re.Match[str]) -> str:
        key = _image_key(match.group(3))
        if key is None:
            return match.group(0)
        return f"{match.group(1)}{match.group(2)}{placeholder(key)}{match.group(2)}"

    return _IMG_SRC.sub(_replace, value)


def placeholder_keys(value: str | None) -> list[str]:
    """Keys of all placeholders in ``value``, in order of appearance."""
    if not value:
        return []
    return list(dict.fromkeys(_PLACEHOLDER.findall(value)))


def replace_placeholders(value: str, urls: Mapping[str, str]) -> tuple[str, int]:
    """Swap placeholders for URLs.

    Returns:
        ``(new_value, replaced)``; placeholders without a URL are kept
    """
    replaced = 0

    def _replace(match: re.Match[str]) -> str:
        nonlocal replaced
        url = urls.get(match.group(1))
        if url is None:
            return match.group(0)
        replaced += 1
        return html.escape(url)

    return _PLACEHOLDER.sub(_replace, value), replaced


def attachment_urls(
    attachments: Iterable[SourceAttachment], uploaded: Mapping[str, str]
) -> dict[str, str]:
    """Placeholder key -> URL for uploaded attachments.

    Each attachment is reachable by its ObjectID and by its file name.
    ``uploaded`` maps attachment ObjectID to the uploaded URL.
    """
    urls: dict[str, str] = {}
    for attachment in attachments:
        url = uploaded.get(attachment.object_id)
        if url is None:
            continue
        urls.setdefault(name_key(attachment.name), url)
        urls[attachment.object_id] = url
    return urls


def relation_urls(
    relations: Iterable[Mapping[str, Any]], attachments: Iterable[SourceAttachment] = ()
) -> dict[str, str]:
    """Placeholder key -> URL for files already attached to a target record.

    Files are matched to source attachments by name, so both the name and
    the source ObjectID resolve.
    """
    by_name: dict[str, str] = {}
    for relation in relations:
        if relation.get("rel") != "AttachedFile" or not relation.get("url"):
            continue
        url = str(relation["url"])
        name = (relation.get("attributes") or {}).get("name")
        if not name:
            name = (parse_qs(urlparse(url).query).get("fileName") or [None])[0]
        if name:
            by_name.setdefault(name_key(str(name)), url)

    urls = dict(by_name)
    for attachment in attachments:
        url = by_name.get(name_key(attachment.name))
        if url is not None:
            urls[attachment.object_id] = url
    return urls
