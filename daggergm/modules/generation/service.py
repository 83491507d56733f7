from __future__ import annotations

import asyncio
import hashlib
import json
from dataclasses import dataclass
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from daggergm.config import settings
from daggergm.logging import get_logger
from daggergm.modules.adventures.schemas import AdventureConfig, Scene
from daggergm.modules.generation.client import ProviderCallError, call_chat_completions, json_schema_response_format
from daggergm.modules.generation.errors import GenerationError, GrammarCheckError
from daggergm.modules.generation.grammarcheck import coerce_output
from daggergm.modules.generation.prompt_profiles import render_prompt
from daggergm.modules.generation.schemas import (
    MOVEMENT_SCAFFOLD_SCHEMA,
    MOVEMENT_SCAFFOLD_SCHEMA_NAME,
    REFINEMENT_SCHEMA,
    REFINEMENT_SCHEMA_NAME,
    SCAFFOLD_SCHEMA,
    SCAFFOLD_SCHEMA_NAME,
    SCENE_EXPANSION_SCHEMA,
    SCENE_EXPANSION_SCHEMA_NAME,
    NPC,
    Adversary,
    Environment,
    LootItem,
    MovementScaffold,
    RefinementResult,
    ScaffoldResult,
    SceneExpansion,
)

ModelT = TypeVar("ModelT", bound=BaseModel)

CHAT_COMPLETIONS_PATH = "/chat/completions"
SCAFFOLD_TEMPERATURE = 0.8
EXPANSION_TEMPERATURE = 0.8
REFINEMENT_TEMPERATURE = 0.4

logger = get_logger("daggergm.generation")


@dataclass(frozen=True)
class _LLMChannelConfig:
    api_key: str
    base_url: str
    path: str
    model: str
    timeout_s: float
    max_attempts: int


class GenerationGateway:
    """Typed access to the adventure generator.

    With ``llm_api_key`` configured every call goes to an OpenAI-compatible
    chat completions endpoint with a JSON schema response format. Without it
    the gateway answers deterministically from the request, which keeps local
    runs and tests offline. Every failure surfaces as ``GenerationError``.
    """

    def provider_trace_label(self) -> str:
        return "chat_completions" if self._is_real_mode() else "offline"

    def generate_scaffold(self, config: AdventureConfig) -> ScaffoldResult:
        if not self._is_real_mode():
            return _offline_scaffold(config)
        system_prompt, user_prompt = render_prompt(
            "adventure_scaffold_v1",
            slots=config.model_dump(),
        )
        result = self._structured(
            operation="generate_scaffold",
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            schema_name=SCAFFOLD_SCHEMA_NAME,
            schema=SCAFFOLD_SCHEMA,
            model=ScaffoldResult,
            temperature=SCAFFOLD_TEMPERATURE,
        )
        if len(result.movements) != config.num_scenes:
            logger.warning(
                "scaffold_scene_count_mismatch",
                requested=config.num_scenes,
                returned=len(result.movements),
            )
        return result

    def regenerate_scaffold_movement(
        self,
        target: Scene,
        config: AdventureConfig,
        locked_scenes: list[Scene],
    ) -> MovementScaffold:
        if not self._is_real_mode():
            return _offline_movement(target, config)
        system_prompt, user_prompt = render_prompt(
            "movement_regeneration_v1",
            slots={
                "position": target.order_index + 1,
                "frame": config.frame,
                "focus": config.focus,
                "stakes": config.stakes,
                "target_json": _scene_brief(target),
                "locked_scenes_json": json.dumps(
                    [json.loads(_scene_brief(scene)) for scene in locked_scenes], ensure_ascii=False
                ),
            },
        )
        return self._structured(
            operation="regenerate_scaffold_movement",
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            schema_name=MOVEMENT_SCAFFOLD_SCHEMA_NAME,
            schema=MOVEMENT_SCAFFOLD_SCHEMA,
            model=MovementScaffold,
            temperature=SCAFFOLD_TEMPERATURE,
        )

    def expand_scene(self, scene: Scene, config: AdventureConfig) -> SceneExpansion:
        if not self._is_real_mode():
            return _offline_expansion(scene, config)
        system_prompt, user_prompt = render_prompt(
            "scene_expansion_v1",
            slots={
                "scene_type": scene.type,
                "party_size": config.party_size,
                "party_level": config.party_level,
                "difficulty": config.difficulty,
                "frame": config.frame,
                "scene_json": _scene_brief(scene),
            },
        )
        return self._structured(
            operation="expand_scene",
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            schema_name=SCENE_EXPANSION_SCHEMA_NAME,
            schema=SCENE_EXPANSION_SCHEMA,
            model=SceneExpansion,
            temperature=EXPANSION_TEMPERATURE,
        )

    def refine_content(self, content: str, instruction: str, context: dict[str, str]) -> RefinementResult:
        if not self._is_real_mode():
            return _offline_refinement(content, instruction)
        system_prompt, user_prompt = render_prompt(
            "content_refinement_v1",
            slots={
                "instruction": instruction,
                "context_json": json.dumps(context, ensure_ascii=False, sort_keys=True),
                "content": content,
            },
        )
        return self._structured(
            operation="refine_content",
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            schema_name=REFINEMENT_SCHEMA_NAME,
            schema=REFINEMENT_SCHEMA,
            model=RefinementResult,
            temperature=REFINEMENT_TEMPERATURE,
        )

    def _structured(
        self,
        *,
        operation: str,
        system_prompt: str,
        user_prompt: str,
        schema_name: str,
        schema: dict,
        model: type[ModelT],
        temperature: float,
    ) -> ModelT:
        channel = self._resolve_channel()
        try:
            raw = asyncio.run(
                call_chat_completions(
                    api_key=channel.api_key,
                    base_url=channel.base_url,
                    path=channel.path,
                    model=channel.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    response_format=json_schema_response_format(name=schema_name, schema=schema),
                    timeout_s=channel.timeout_s,
                    temperature=temperature,
                    max_attempts=channel.max_attempts,
                )
            )
            return coerce_output(raw, schema_name=schema_name, schema=schema, model=model)
        except ProviderCallError as exc:
            logger.warning("generation_failed", operation=operation, reason="provider", error=str(exc))
            raise GenerationError(str(exc), operation=operation, reason="provider_error") from exc
        except (GrammarCheckError, ValidationError) as exc:
            logger.warning("generation_failed", operation=operation, reason="malformed_output", error=str(exc))
            raise GenerationError(str(exc), operation=operation, reason="malformed_output") from exc

    @staticmethod
    def _clean(value: str | None) -> str:
        return str(value or "").strip()

    def _resolve_channel(self) -> _LLMChannelConfig:
        return _LLMChannelConfig(
            api_key=self._clean(settings.llm_api_key),
            base_url=self._clean(settings.llm_base_url),
            path=CHAT_COMPLETIONS_PATH,
            model=self._clean(settings.llm_model),
            timeout_s=float(settings.llm_timeout_s),
            max_attempts=int(settings.llm_max_attempts),
        )

    @staticmethod
    def _is_real_mode() -> bool:
        return bool(str(settings.llm_api_key or "").strip())


def _scene_brief(scene: Scene) -> str:
    return json.dumps(
        {
            "title": scene.title,
            "type": scene.type,
            "description": scene.description,
            "estimated_time": scene.estimated_time,
        },
        ensure_ascii=False,
    )


def _stable_index(seed: str, modulo: int) -> int:
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % modulo


_FRAME_PLACES = {
    "witherwild": "the Verdant Ruins",
    "order": "the Golden Citadel",
}
_STAKES_PREFIX = {
    "world": "The Fate of",
    "high": "The Crisis at",
}

_OFFLINE_MOVEMENTS: tuple[tuple[str, str, str], ...] = (
    (
        "The Gathering Storm",
        "social",
        "The party arrives at a small settlement on the edge of {wilds}. Locals are uneasy about strange "
        "occurrences tied to {focus} and ask the party to investigate.",
    ),
    (
        "Into the Unknown",
        "exploration",
        "Following the clues, the party ventures into {depths}. Hazards and strange creatures test their "
        "resolve as the truth about {focus} comes into view.",
    ),
    (
        "The Heart of Danger",
        "combat",
        "The party finds the source of the disturbance: {threat}. Their choices here decide the fate of "
        "everyone involved.",
    ),
    (
        "Unexpected Complications",
        "exploration",
        "New obstacles rise as the party tries to resolve the situation, forcing them across treacherous "
        "ground and into hard bargains.",
    ),
    (
        "The Final Confrontation",
        "combat",
        "The true threat reveals itself and the party must use everything they have learned to overcome it.",
    ),
    (
        "Whispers in the Archive",
        "puzzle",
        "A sealed archive holds the key to {focus}, guarded by riddles left by its long-dead keepers.",
    ),
    (
        "An Uneasy Truce",
        "social",
        "A rival faction offers help at a price, and the party must decide how far to trust them.",
    ),
)

_OFFLINE_ALTERNATES: tuple[tuple[str, str, str], ...] = (
    ("Shadows on the Road", "exploration", "An ambushed caravan leaves a trail that points toward {focus}."),
    ("The Broken Seal", "puzzle", "An ancient ward is failing, and only its forgotten pattern can restore it."),
    ("Council of Lanterns", "social", "Village elders argue over how to answer {focus} while time runs short."),
    ("Teeth in the Dark", "combat", "Hungry things stalk the party through a collapsed passage."),
    ("The Drowned Bell", "exploration", "A bell tolls beneath the flooded square, calling the party below."),
    ("Masks at the Feast", "social", "A noble feast hides a conspiracy connected to {focus}."),
)


def _estimated_time(scene_type: str, party_level: int) -> str:
    if scene_type == "combat":
        return "60-90 minutes" if party_level >= 3 else "45-60 minutes"
    if scene_type == "exploration" and party_level >= 3:
        return "45-60 minutes"
    return "30-45 minutes"


def _offline_scaffold(config: AdventureConfig) -> ScaffoldResult:
    focus = (config.focus or config.primary_motif).replace("_", " ").lower()
    wild = config.frame == "witherwild"
    slots = {
        "focus": focus,
        "wilds": "the untamed wilderness" if wild else "civilized lands",
        "depths": "dense forests thick with old magic" if wild else "forgotten ruins full of old secrets",
        "threat": {
            "world": "a power that threatens the entire realm",
            "high": "a dangerous adversary with dark intentions",
        }.get(config.stakes, "a misunderstood creature in need of help"),
    }
    movements = []
    for index in range(config.num_scenes):
        title, scene_type, template = _OFFLINE_MOVEMENTS[index % len(_OFFLINE_MOVEMENTS)]
        if index >= len(_OFFLINE_MOVEMENTS):
            title = f"{title} ({index // len(_OFFLINE_MOVEMENTS) + 1})"
        movements.append(
            MovementScaffold(
                title=title,
                type=scene_type,
                description=template.format(**slots),
                estimated_time=_estimated_time(scene_type, config.party_level),
            )
        )
    prefix = _STAKES_PREFIX.get(config.stakes, "The Mystery of")
    place = _FRAME_PLACES.get(config.frame, "the Ancient Keep")
    return ScaffoldResult(
        title=f"{prefix} {place}",
        description=(
            f"A {config.difficulty} adventure for {config.party_size} level {config.party_level} adventurers. "
            f"{focus.capitalize()} awaits in the {config.frame}."
        ),
        movements=movements,
    )


def _offline_movement(target: Scene, config: AdventureConfig) -> MovementScaffold:
    focus = (config.focus or config.primary_motif).replace("_", " ").lower()
    start = _stable_index(f"{target.id}:{target.title}", len(_OFFLINE_ALTERNATES))
    for offset in range(len(_OFFLINE_ALTERNATES)):
        title, scene_type, template = _OFFLINE_ALTERNATES[(start + offset) % len(_OFFLINE_ALTERNATES)]
        if title != target.title:
            break
    return MovementScaffold(
        title=title,
        type=scene_type,
        description=template.format(focus=focus),
        estimated_time=_estimated_time(scene_type, config.party_level),
    )


def _offline_expansion(scene: Scene, config: AdventureConfig) -> SceneExpansion:
    tier = min(4, 1 + (config.party_level - 1) // 3)
    place = _FRAME_PLACES.get(config.frame, "the Ancient Keep")
    adversaries = []
    if scene.type == "combat":
        adversaries.append(
            Adversary(
                name=f"{place.split()[-1]} Warden",
                tier=tier,
                description="A relentless guardian bound to this place.",
                tactics="Holds the chokepoint and targets whoever carries light.",
            )
        )
    return SceneExpansion(
        content=f"{scene.title}\n\n{scene.description}",
        descriptions=[
            f"The air around {place} hums with old magic.",
            "Footprints, fresh and uneven, lead deeper in.",
        ],
        narration=f"As you step into {scene.title.lower()}, the world seems to hold its breath.",
        npcs=[NPC(name="Elder Sylara", role="guide", description="A settlement leader who knows more than she says.")],
        adversaries=adversaries,
        environment=Environment(
            name=place.removeprefix("the ").title(),
            description=f"A {scene.type} space shaped by the {config.frame}.",
            features=["Crumbling stonework", "Hidden passage", "Ley line scar"],
        ),
        loot=[LootItem(name="Weathered map fragment", description="Marks a route nobody remembers.")],
        mechanics=[
            f"Difficulty {10 + tier * 2} Instinct roll to notice the hidden passage.",
            f"Spotlight the party member with the lowest Hope for the opening beat ({config.difficulty}).",
        ],
        gm_notes=f"Scale pressure for a party of {config.party_size}; lean into {scene.type} beats.",
    )


def _offline_refinement(content: str, instruction: str) -> RefinementResult:
    cleaned_instruction = " ".join(instruction.split())
    base = content.strip() or "(empty scene)"
    return RefinementResult(
        refined_content=f"{base}\n\n[Revised: {cleaned_instruction}]",
        changes=[f"Applied instruction: {cleaned_instruction}"],
    )


_generation_gateway: GenerationGateway | None = None


def get_generation_gateway() -> GenerationGateway:
    global _generation_gateway
    if _generation_gateway is None:
        _generation_gateway = GenerationGateway()
    return _generation_gateway
