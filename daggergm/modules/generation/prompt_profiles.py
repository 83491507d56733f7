from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PromptProfile:
    profile_id: str
    system_template: str
    user_template: str


_GM_SYSTEM = (
    "You are an expert Game Master designing adventures for the Daggerheart tabletop RPG. "
    "Write evocative but table-ready material a GM can run without preparation."
)

PROFILES: dict[str, PromptProfile] = {
    "adventure_scaffold_v1": PromptProfile(
        profile_id="adventure_scaffold_v1",
        system_template=_GM_SYSTEM,
        user_template=(
            "Create the scaffold of a {length} adventure with exactly {num_scenes} movements. "
            "Frame={frame}; primary_motif={primary_motif}; focus={focus}; "
            "party_size={party_size}; party_level={party_level}; difficulty={difficulty}; stakes={stakes}. "
            "Each movement needs a title, a type (combat, exploration, social or puzzle), "
            "a two or three sentence description and an estimated play time."
        ),
    ),
    "movement_regeneration_v1": PromptProfile(
        profile_id="movement_regeneration_v1",
        system_template=_GM_SYSTEM,
        user_template=(
            "Rewrite movement #{position} of an adventure. Frame={frame}; focus={focus}; stakes={stakes}. "
            "Current version: {target_json}. "
            "These locked movements must stay consistent with your rewrite and are not to be changed: "
            "{locked_scenes_json}. Return a fresh title, type, description and estimated play time."
        ),
    ),
    "scene_expansion_v1": PromptProfile(
        profile_id="scene_expansion_v1",
        system_template=_GM_SYSTEM,
        user_template=(
            "Expand this {scene_type} scene into runnable detail for a party of {party_size} at level {party_level} "
            "({difficulty} difficulty) in the {frame} frame. Scene: {scene_json}. "
            "Provide read-aloud narration, sensory descriptions, NPCs, adversaries with tiers, "
            "the environment, loot, rules mechanics and private GM notes. "
            "Put the full scene write-up in content."
        ),
    ),
    "content_refinement_v1": PromptProfile(
        profile_id="content_refinement_v1",
        system_template=(
            "You are an editor for tabletop RPG adventure text. Apply the requested change and keep "
            "everything else intact."
        ),
        user_template=(
            "Instruction: {instruction}. Context: {context_json}. "
            "Content to refine: {content}. "
            "Return the refined content and a short list of the changes you made."
        ),
    ),
}

_DEFAULT_SLOT_LIMIT = 280
_SLOT_LIMITS = {
    "target_json": 1200,
    "locked_scenes_json": 4000,
    "scene_json": 4000,
    "context_json": 1600,
    "content": 10000,
    "instruction": 1000,
}


def render_prompt(profile_id: str, *, slots: dict[str, object]) -> tuple[str, str]:
    profile = PROFILES.get(profile_id)
    if profile is None:
        raise ValueError(f"unknown prompt profile: {profile_id}")

    safe_slots = {}
    for key, value in slots.items():
        limit = _SLOT_LIMITS.get(key, _DEFAULT_SLOT_LIMIT)
        safe_slots[key] = " ".join(str(value if value is not None else "").split())[:limit]
    try:
        user_prompt = profile.user_template.format(**safe_slots)
    except KeyError as exc:
        missing = str(exc).strip("'")
        raise ValueError(f"missing prompt slot: {missing}") from exc
    return profile.system_template, user_prompt
