from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from daggergm.modules.adventures.schemas import AdventureRecord, Scene

ExportFormat = Literal["markdown", "roll20"]
EXPORT_FORMATS: tuple[str, ...] = ("markdown", "roll20")

_FILENAME_RE = re.compile(r"[^a-z0-9]+")
_HEADING_RE = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_EMPHASIS_RE = re.compile(r"(\*{1,2}|_{1,2})([^*_]+)\1")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_CODE_BLOCK_RE = re.compile(r"```[^`]*```")
_INLINE_CODE_RE = re.compile(r"`([^`]+)`")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class ExportFile:
    filename: str
    content: str
    media_type: str


def _filename_stem(title: str) -> str:
    return _FILENAME_RE.sub("-", title.lower()).strip("-") or "adventure"


def _capitalize(value: str) -> str:
    return value[:1].upper() + value[1:]


def _scene_body(scene: Scene) -> str:
    if scene.content.strip():
        return scene.content
    if scene.expansion is not None and scene.expansion.content.strip():
        return scene.expansion.content
    return scene.description


def _scene_mechanics(scene: Scene) -> list[str]:
    if scene.mechanics:
        return list(scene.mechanics)
    return list(scene.expansion.mechanics) if scene.expansion is not None else []


def _scene_gm_notes(scene: Scene) -> str:
    if scene.gm_notes.strip():
        return scene.gm_notes
    return scene.expansion.gm_notes if scene.expansion is not None else ""


def _ordered(record: AdventureRecord) -> list[Scene]:
    return sorted(record.movements, key=lambda scene: scene.order_index)


def markdown_to_plain_text(markdown: str) -> str:
    text = _HEADING_RE.sub("", markdown)
    text = _EMPHASIS_RE.sub(r"\2", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _CODE_BLOCK_RE.sub("", text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    return _BLANK_RUN_RE.sub("\n\n", text).strip()


def render_markdown(record: AdventureRecord) -> str:
    config = record.config
    lines = [
        f"# {record.title}",
        "",
        "## Adventure Details",
        "",
        f"**Frame:** {_capitalize(config.frame)}",
        f"**Party Size:** {config.party_size}",
        f"**Party Level:** {config.party_level}",
        f"**Difficulty:** {_capitalize(config.difficulty)}",
        f"**Stakes:** {_capitalize(config.stakes)}",
        "",
    ]
    if record.description.strip():
        lines.extend(["## Description", "", record.description, ""])

    scenes = _ordered(record)
    if not scenes:
        lines.append("*No movements created yet*")
        return "\n".join(lines)

    for index, scene in enumerate(scenes, start=1):
        lines.extend([f"## Movement {index}: {scene.title}", "", f"**Type:** {_capitalize(scene.type)}"])
        if scene.estimated_time:
            lines.append(f"**Estimated Time:** {scene.estimated_time}")
        lines.extend(["", _scene_body(scene), ""])

        if scene.expansion is not None:
            for npc in scene.expansion.npcs:
                role = f" ({npc.role})" if npc.role else ""
                lines.append(f"- **NPC:** {npc.name}{role}. {npc.description}".rstrip())
            for adversary in scene.expansion.adversaries:
                label = f"- **Adversary (Tier {adversary.tier}):** {adversary.name}."
                lines.append(f"{label} {adversary.description}".rstrip())
            if scene.expansion.npcs or scene.expansion.adversaries:
                lines.append("")

        gm_notes = _scene_gm_notes(scene)
        if gm_notes.strip():
            lines.extend(["<details>", "<summary>GM Notes</summary>", "", gm_notes, "", "</details>", ""])

        mechanics = _scene_mechanics(scene)
        if mechanics:
            lines.append("**Mechanics:**")
            lines.extend(f"- {item}" for item in mechanics)
            lines.append("")

    return "\n".join(lines)


def render_roll20(record: AdventureRecord) -> str:
    """Plain-text Roll20 handout. GM-only material sits inside bracketed blocks."""
    config = record.config
    lines = [
        f"[HANDOUT: {record.title}]",
        "",
        "[GM NOTES]",
        f"Frame: {config.frame}",
        f"Party Size: {config.party_size}",
        f"Party Level: {config.party_level}",
        f"Difficulty: {config.difficulty}",
        f"Stakes: {config.stakes}",
        "[/GM NOTES]",
        "",
    ]
    if record.description.strip():
        lines.extend([record.description, ""])

    for index, scene in enumerate(_ordered(record), start=1):
        lines.extend([f"[SCENE {index}: {scene.title}]", f"Type: {scene.type}"])
        if scene.estimated_time:
            lines.append(f"Time: {scene.estimated_time}")
        lines.extend(["", markdown_to_plain_text(_scene_body(scene)), ""])

        gm_notes = _scene_gm_notes(scene)
        mechanics = _scene_mechanics(scene)
        if gm_notes.strip() or mechanics:
            lines.append("[GM ONLY]")
            if gm_notes.strip():
                lines.append(gm_notes)
            lines.extend(f"Mechanic: {item}" for item in mechanics)
            lines.extend(["[/GM ONLY]", ""])

    return "\n".join(lines)


def export_file(record: AdventureRecord, export_format: ExportFormat) -> ExportFile:
    stem = _filename_stem(record.title)
    if export_format == "markdown":
        return ExportFile(filename=f"{stem}.md", content=render_markdown(record), media_type="text/markdown")
    return ExportFile(filename=f"{stem}-roll20.txt", content=render_roll20(record), media_type="text/plain")
