"""Prompt rendering for the classification and proposal calls."""

from __future__ import annotations

from collections.abc import Sequence

from docflow.core.models import ChatMessage, Conversation, RagContext

# Guard against reply cycles in malformed metadata
MAX_REPLY_DEPTH = 8

CONTEXT_CONTENT_CHARS = 500

CLASSIFICATION_SYSTEM_PROMPT = """\
You review community chat messages about {project_name} and decide which of \
them contain information worth adding to or correcting in the documentation.

Group related batch messages into threads. For each thread give:
- category: one of {categories}, or "no-doc-value" when the thread has no \
documentation value (greetings, off-topic chat, already-answered questions \
covered by the docs)
- messages: the numeric ids of its batch messages, taken from the [MSG_<id>] \
references. Never reference context messages.
- summary: what the thread is about
- doc_value_reason: why it matters for the documentation
- rag_search_criteria: keywords and a semantic query for finding the \
documentation pages it relates to

Also give a short batch_summary of the whole batch."""

PROPOSAL_SYSTEM_PROMPT = """\
You are a technical writer maintaining the documentation of {project_name}. \
Given a conversation from the community chat and the most relevant existing \
documentation pages, propose concrete documentation edits.

Rules:
- update_type is INSERT (new content), UPDATE (change existing content), \
DELETE (remove wrong content) or NONE (no change needed)
- page is the path of the documentation page to change, preferably one of \
the retrieved pages
- suggested_text is the exact Markdown to insert or the replacement text
- source_messages lists the numeric ids of the conversation messages that \
justify the change, taken from the [MSG_<id>] references
- propose at most {max_proposals} changes; an empty list is fine when the \
documentation already covers the conversation
- set proposals_rejected with a rejection_reason when the conversation should \
not lead to any documentation change"""


def reply_depths(messages: Sequence[ChatMessage]) -> dict[int, int]:
    """Compute the reply depth of each message within the given set.

    Only replies to messages in the same set count; a reply to an unknown
    message has depth 0.
    """
    by_native = {m.message_id: m for m in messages if m.message_id}
    depths: dict[int, int] = {}
    for message in messages:
        depth = 0
        current = message
        seen = {message.id}
        while depth < MAX_REPLY_DEPTH:
            parent_id = current.reply_to
            parent = by_native.get(parent_id) if parent_id else None
            if parent is None or parent.id in seen:
                break
            seen.add(parent.id)
            depth += 1
            current = parent
        depths[message.id] = depth
    return depths


def _location(message: ChatMessage) -> str:
    channel = f"#{message.channel}" if message.channel else "(no channel)"
    if message.topic:
        channel += f" [Topic: {message.topic}]"
    return channel


def render_message_line(message: ChatMessage, depth: int = 0) -> str:
    """Render one batch message with its stable reference."""
    indent = "  " * depth
    marker = "↳ " if depth else ""
    return (
        f"{indent}{marker}[MSG_{message.id}] [{message.timestamp.isoformat()}] "
        f"{message.author} in {_location(message)}: {message.content}"
    )


def render_context_line(message: ChatMessage) -> str:
    content = message.content
    if len(content) > CONTEXT_CONTENT_CHARS:
        content = content[:CONTEXT_CONTENT_CHARS] + "..."
    return f"[{message.timestamp.isoformat()}] {message.author} in {_location(message)}: {content}"


def render_classification_prompt(
    batch: Sequence[ChatMessage],
    context: Sequence[ChatMessage],
) -> str:
    """Render the batch and its preceding context for classification."""
    lines: list[str] = []
    if context:
        lines.append("=== CONTEXT (earlier messages, for reference only) ===")
        lines.extend(render_context_line(m) for m in context)
        lines.append("")

    depths = reply_depths(batch)
    lines.append(f"=== BATCH ({len(batch)} messages to classify) ===")
    lines.extend(render_message_line(m, depths[m.id]) for m in batch)
    return "\n".join(lines)


def render_proposal_prompt(conversation: Conversation, rag: RagContext | None) -> str:
    """Render a conversation and its retrieved documentation."""
    lines = [f"=== CONVERSATION {conversation.id} ==="]
    if conversation.category:
        lines.append(f"Category: {conversation.category}")
    if conversation.summary:
        lines.append(f"Summary: {conversation.summary}")
    lines.append("")

    depths = reply_depths(conversation.messages)
    for message in conversation.messages:
        lines.append(render_message_line(message, depths[message.id]))
        tag = conversation.tags.get(message.id)
        if tag and tag.reason:
            lines.append(f"    (documentation value: {tag.reason})")

    lines.append("")
    documents = rag.documents if rag else []
    if documents:
        lines.append(f"=== RELATED DOCUMENTATION ({len(documents)} pages) ===")
        for doc in documents:
            lines.append(f"--- {doc.path} | {doc.title} (similarity {doc.score:.2f}) ---")
            lines.append(doc.content)
            lines.append("")
    else:
        lines.append("=== RELATED DOCUMENTATION ===")
        lines.append("No related pages were found.")
    return "\n".join(lines)
