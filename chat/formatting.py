# markdown subset -> HTML for chat bubbles.
# code is stashed behind placeholders so bold/bullet passes never touch it

from __future__ import annotations

import html
import re

FENCE_RE = re.compile(r"```(\w+)?\n(.*?)```", re.S)
INLINE_CODE_RE = re.compile(r"`([^`]+)`")
BOLD_RE = re.compile(r"\*\*(.*?)\*\*")
STASH_RE = re.compile(r"\x00(\d+)\x00")

CODE_BLOCK_TEMPLATE = (
    '<div class="code-block relative my-4 rounded-lg overflow-hidden">'
    '<div class="code-header flex items-center justify-between bg-gray-800 px-4 py-2">'
    '<span class="code-lang text-sm text-gray-400">{lang}</span>'
    '<button type="button" class="copy-button text-gray-400 hover:text-white" data-code="{payload}">Copy</button>'
    "</div>"
    '<pre class="bg-gray-900 p-4 overflow-x-auto"><code class="text-sm font-mono">{body}</code></pre>'
    "</div>"
)
INLINE_CODE_TEMPLATE = (
    '<code class="inline-code bg-gray-800 text-pink-400 px-1.5 py-0.5 rounded font-mono text-sm">{}</code>'
)
BOLD_TEMPLATE = '<strong class="font-bold">{}</strong>'
LIST_ITEM_TEMPLATE = '<li class="flex items-start gap-2 ml-4"><span class="mt-1.5">•</span><span>{}</span></li>'
LIST_OPEN = '<ul class="space-y-2 my-4">'
LIST_CLOSE = "</ul>"


def _code_block(lang, code, escape):
    code = code.strip()
    return CODE_BLOCK_TEMPLATE.format(
        lang=html.escape(lang) if lang else "code",
        # always attribute-escaped so dataset.code reads back the exact code
        payload=html.escape(code, quote=True),
        body=html.escape(code, quote=False) if escape else code,
    )


def _bullets(text):
    out = []
    run = []
    for line in text.split("\n"):
        if line.startswith("*"):
            run.append(LIST_ITEM_TEMPLATE.format(line[1:]))
            continue
        if run:
            out.append(LIST_OPEN + "".join(run) + LIST_CLOSE)
            run = []
        out.append(line)
    if run:
        out.append(LIST_OPEN + "".join(run) + LIST_CLOSE)
    return "\n".join(out)


def format_message(text: str, escape: bool = False) -> str:
    """Render raw chat text as an HTML fragment.

    With ``escape=False`` any HTML already in ``text`` passes through as-is;
    callers rendering untrusted text should pass ``escape=True``.
    """
    if not text:
        return ""
    text = text.replace("\x00", "")
    stash = []

    def keep(fragment):
        stash.append(fragment)
        return f"\x00{len(stash) - 1}\x00"

    text = FENCE_RE.sub(lambda m: keep(_code_block(m.group(1), m.group(2), escape)), text)
    text = INLINE_CODE_RE.sub(
        lambda m: keep(INLINE_CODE_TEMPLATE.format(html.escape(m.group(1), quote=False) if escape else m.group(1))),
        text,
    )
    if escape:
        text = html.escape(text, quote=False)

    text = BOLD_RE.sub(lambda m: BOLD_TEMPLATE.format(m.group(1)), text)
    text = _bullets(text)

    return STASH_RE.sub(lambda m: stash[int(m.group(1))], text)
