"""Handlebars prompt templates and response schemas for every generation stage."""

from __future__ import annotations

import random
from collections.abc import Callable, Sequence
from typing import Any

import pybars

from comic_weaver.models import MOOD_AXES, MoodAxis, NPC, PanelDraft, StoryState


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} iterates over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} iterates over the last N items."""
    result = []
    count = int(count)
    for item in (list(items or [])[-count:] if count > 0 else []):
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Context ──────────────────────────────────────────────

_MOOD_GUIDANCE: dict[MoodAxis, str] = {
    "adventure": "adventure is high: include exciting or exploratory elements",
    "danger": "danger is high: add tension, suspense, or a threat",
    "romance": "romance is high: introduce emotional or intimate moments",
    "drama": "drama is high: elevate stakes, emotional weight, and twists",
}

MOOD_GUIDANCE_THRESHOLD = 0.3


def build_context(
    story: StoryState,
    *,
    panels: Sequence[PanelDraft] = (),
    character_description: str | None = None,
    npcs: Sequence[NPC] | None = None,
) -> dict[str, Any]:
    """Template variables shared by every story prompt.

    ``narratives`` holds every narrative so far; templates use
    ``{{#last narratives 3}}`` to keep only the recent ones.
    """
    mood = story.mood
    roster = story.npcs if npcs is None else npcs
    return {
        "theme": story.theme or "",
        "mood": {axis: f"{mood.get(axis):.2f}" for axis in MOOD_AXES},
        "mood_text": mood.describe(),
        "mood_guidance": [
            _MOOD_GUIDANCE[axis] for axis in MOOD_AXES
            if mood.get(axis) > MOOD_GUIDANCE_THRESHOLD
        ],
        "character_description": character_description or story.character_description or "",
        "narratives": [p.narrative for p in story.all_panels],
        "first_chapter": not story.all_panels,
        "last_choice": story.last_choice_text or "",
        "npcs": [{"name": n.name, "description": n.description} for n in roster],
        "panels": [
            {"number": i + 1, "description": p.description, "narrative": p.narrative}
            for i, p in enumerate(panels)
        ],
    }


# ── Templates ────────────────────────────────────────────

_STORY_SO_FAR = """\
{{#if first_chapter}}This is the very first chapter of the story.
{{else}}The story so far: {{#last narratives 3}}{{{this}}} {{/last}}
{{/if}}\
{{#if last_choice}}The reader just chose: "{{{last_choice}}}". The story must continue directly from this decision.
{{else}}This is the beginning of the story, so there was no previous choice.
{{/if}}\
{{#if npcs}}Recurring characters (reuse their exact names and descriptions):
{{#each npcs}}- {{{name}}}: {{{description}}}
{{/each}}{{/if}}"""

_CHOICE_RULES = """\
Create exactly 4 choices for the reader. Each choice is biased toward ONE mood axis
among adventure, danger, romance, drama:
- the biased axis impact is between 0.10 and 0.20
- every other axis impact is between 0.00 and 0.05
- across the 4 choices, cover all four axes exactly once
Each choice text should clearly signal its bias."""

CHAPTER_TEXT_TEMPLATE = """\
You are a comic book writer. Continue the story based on the provided context.
Theme: {{{theme}}}
Main character: {{{character_description}}}
Current mood - {{{mood_text}}}

""" + _STORY_SO_FAR + """
Instructions:
1. Write a new chapter of exactly {{panel_count}} comic panels that follows from the decision above.
2. For each panel give a detailed visual "description" for an image generator and a short "narrative".
3. Reflect the current mood.
{{#each mood_guidance}}   - {{{this}}}
{{/each}}\
4. """ + _CHOICE_RULES + """
5. List any new named characters in "newNpcs" with a name and a detailed visual description.
   Do not introduce more than two new named characters. Do not repeat existing ones.
6. Respond ONLY with the JSON object described in the schema.
"""

REFERENCE_PAGE_TEMPLATE = """\
You are the director of a {{{theme}}} comic. Draw ONE comic page laid out as a grid of
exactly {{panel_count}} panels, then describe it.

Main character: {{#if character_description}}{{{character_description}}}{{else}}invent a distinctive main character and describe them in "characterDescription".{{/if}}
Current mood - {{{mood_text}}}

""" + _STORY_SO_FAR + """
Page rules:
- Modern American comic book art, clear black line art, dynamic coloring.
- Keep every character visually consistent with the supplied reference images.
- Vary shot sizes and angles across the page.
{{#each mood_guidance}}- {{{this}}}
{{/each}}
After the image, output a JSON object with:
- "panels": {{panel_count}} objects in reading order, each with "description", "narrative"
  and "specs" (shot, angle, lens, composition, framing) matching the drawn panel.
- "choices": """ + _CHOICE_RULES.replace("\n", "\n  ") + """
- "newNpcs": new named characters (name, detailed visual description), at most two.
- "characterDescription": the main character's visual description.
"""

PANEL_FROM_PAGE_TEMPLATE = """\
Redraw panel {{number}} of the supplied comic page as a standalone, full-resolution panel.
Match the page's composition, characters, palette and lighting exactly.
Theme: {{{theme}}}.
Panel content: {{{description}}}
Main character: {{{character_description}}}
{{#each npcs}}Character {{{name}}}: {{{description}}}
{{/each}}
Camera:
{{{camera}}}
Aspect ratio: 4:3. No speech bubbles or captions.
"""

PANEL_TEMPLATE = """\
A vibrant comic book panel with clear black line art and dynamic coloring.
Style: Modern American comic book art.
Theme: {{{theme}}}.
Panel content: {{{description}}}
Main character: {{{character_description}}}
{{#each npcs}}Character {{{name}}}: {{{description}}}
{{/each}}
Camera:
{{{camera}}}
Draw every character consistently with their description and the supplied reference images.
Aspect ratio: 4:3. No speech bubbles or captions.
"""

PANEL_BATCH_TEMPLATE = """\
Draw {{panel_count}} separate comic book panels, one image per panel, in this order.
Style: Modern American comic book art with clear black line art and dynamic coloring.
Theme: {{{theme}}}.
Main character: {{{character_description}}}
{{#each npcs}}Character {{{name}}}: {{{description}}}
{{/each}}
{{#each shots}}Panel {{number}}: {{{description}}}
Camera:
{{{camera}}}

{{/each}}\
Keep every character consistent across all panels and with the supplied reference images.
Return exactly {{panel_count}} images. Aspect ratio: 4:3. No speech bubbles or captions.
"""

NPC_PORTRAIT_TEMPLATE = """\
Character reference sheet for a {{{theme}}} comic.
Name: {{{name}}}
Appearance: {{{description}}}
A single front-facing waist-up portrait on a plain neutral background, modern American
comic book style, clear line art, even lighting. No text.
"""

PROTAGONIST_PORTRAIT_TEMPLATE = """\
Character reference sheet for the main character of a {{{theme}}} comic.
Appearance: {{{character_description}}}
A single front-facing full-body portrait on a plain neutral background, modern American
comic book style, clear line art, even lighting. No text.
"""

CHARACTER_DESCRIPTION_TEMPLATE = """\
Create a detailed visual description of the main character for a comic book with a
{{{theme}}} theme, suitable for an image generator to draw them consistently.
Focus on hair, eyes, clothing and one unique accessory.

Identity anchors (use all of them):
{{#each attributes}}- {{{label}}}: {{{value}}}
{{/each}}
Write a concise, vivid description of 120-200 words. Avoid generic tropes; be specific.
Respond with a JSON object {"description": "..."}.
"""

AUDIO_BRIEFS_TEMPLATE = """\
You are the sound designer for a {{{theme}}} comic chapter.
Current mood - {{{mood_text}}}

Panels:
{{#take panels panel_limit}}{{number}}. {{{description}}} ({{{narrative}}})
{{/take}}
Write:
- "musicPrompt": an instrumental background music cue for the whole chapter.
- "ambiencePrompt": an ambient sound bed to use if no music can be made.
- "perPanel": one entry per panel above, in order, with "sfxPrompt" (a short, concrete
  sound effect) and, only for the most dramatic beats, a "stingerPrompt".
Respond ONLY with the JSON object described in the schema.
"""

FALLBACK_CHOICES_TEMPLATE = """\
You are a comic book writer. The chapter below needs choices for the reader.
Theme: {{{theme}}}
Current mood - {{{mood_text}}}
{{#if last_choice}}The previous decision was: "{{{last_choice}}}".
{{/if}}
Chapter so far:
{{#last narratives 8}}- {{{this}}}
{{/last}}
""" + _CHOICE_RULES + """
Respond ONLY with the JSON object described in the schema.
"""

ENDING_TEMPLATE = """\
You are a comic book writer. Write the FINAL chapter of this {{{theme}}} story.
Main character: {{{character_description}}}
Final mood - {{{mood_text}}}

""" + _STORY_SO_FAR + """
The story ends on its {{{axis}}} thread. Tone: {{{tone}}}
Instructions:
1. Write exactly {{panel_count}} panels that resolve the story with this tone.
2. For each panel give a detailed visual "description" and a short "narrative".
3. The last panel is a clear, satisfying final image.
4. Do not offer choices. Respond ONLY with the JSON object described in the schema.
"""

ENDING_TONES: dict[MoodAxis, str] = {
    "adventure": "triumphant and wide-open; the journey pays off and a new horizon beckons.",
    "danger": "hard-won survival; the threat is faced head-on and the cost is felt.",
    "romance": "warm and intimate; the bond at the heart of the story is sealed.",
    "drama": "cathartic and bittersweet; secrets surface and the stakes land with full weight.",
}


# ── Response schemas (generateContent responseSchema) ────

_IMPACT_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        axis: {"type": "NUMBER", "description": f"Impact on {axis} mood (0.0 to 0.2)."}
        for axis in MOOD_AXES
    },
    "required": list(MOOD_AXES),
}

_CHOICES_SCHEMA = {
    "type": "ARRAY",
    "description": "Exactly 4 choices, each biased to one mood axis.",
    "items": {
        "type": "OBJECT",
        "properties": {
            "text": {"type": "STRING"},
            "impact": _IMPACT_SCHEMA,
        },
        "required": ["text", "impact"],
    },
}

_PANELS_SCHEMA = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "description": {
                "type": "STRING",
                "description": "A detailed visual description of the panel for an image generator.",
            },
            "narrative": {"type": "STRING", "description": "Narrative text or dialogue."},
        },
        "required": ["description", "narrative"],
    },
}

CHAPTER_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "panels": _PANELS_SCHEMA,
        "choices": _CHOICES_SCHEMA,
        "newNpcs": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": {"type": "STRING"},
                    "description": {"type": "STRING"},
                },
                "required": ["name", "description"],
            },
        },
    },
    "required": ["panels", "choices"],
}

CHOICES_SCHEMA = {
    "type": "OBJECT",
    "properties": {"choices": _CHOICES_SCHEMA},
    "required": ["choices"],
}

ENDING_SCHEMA = {
    "type": "OBJECT",
    "properties": {"panels": _PANELS_SCHEMA},
    "required": ["panels"],
}

AUDIO_BRIEFS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "musicPrompt": {"type": "STRING"},
        "ambiencePrompt": {"type": "STRING"},
        "perPanel": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "sfxPrompt": {"type": "STRING"},
                    "stingerPrompt": {"type": "STRING"},
                },
                "required": ["sfxPrompt"],
            },
        },
    },
    "required": ["musicPrompt", "perPanel"],
}

CHARACTER_DESCRIPTION_SCHEMA = {
    "type": "OBJECT",
    "properties": {"description": {"type": "STRING"}},
    "required": ["description"],
}


# ── Protagonist attribute palettes ───────────────────────

_GENDERS = ["female", "male", "non-binary"]
_AGES = ["teen", "young adult", "adult", "middle-aged"]
_BODY_TYPES = ["slim", "athletic", "average", "curvy", "stocky"]
_ETHNICITIES = [
    "East Asian", "South Asian", "Black", "White", "Latinx",
    "Middle Eastern", "Southeast Asian", "Mixed",
]
_EYES = ["brown", "hazel", "green", "blue", "gray", "amber"]
_HAIR_COLORS = [
    "black", "dark brown", "brown", "blonde", "platinum blonde", "auburn", "red", "silver",
]
_HAIR_STYLES = [
    "short and messy", "shoulder-length wavy", "long and straight", "curly bob",
    "pixie cut", "braided", "undercut", "pony tail",
]
_OUTFITS = {
    "fantasy": [
        "leather adventurer gear with subtle embroidery",
        "mage robes with geometric trims",
        "light chainmail over tunic, travel cloak",
        "ranger attire with layered fabrics and utility belts",
    ],
    "scifi": [
        "sleek synth-fiber suit with holo accents",
        "utilitarian starship jumpsuit with modular panels",
        "techwear layers with reactive trim",
        "armored pilot suit with minimal plating",
    ],
    "school": [
        "casual school uniform with personalized touches",
        "streetwear layered over uniform basics",
        "sporty jacket, graphic tee, and sneakers",
        "artsy cardigan, skirt or trousers, and loafers",
    ],
}
_ACCESSORIES = {
    "fantasy": [
        "ornate pendant with a faint glow",
        "engraved bracer with runes",
        "leather satchel with charms",
        "ring shaped like a tiny serpent",
    ],
    "scifi": [
        "wrist-mounted holo communicator",
        "augmented reality visor",
        "compact utility drone perched nearby",
        "neon-lined data glove",
    ],
    "school": [
        "distinctive enamel pin collection",
        "headphones resting around the neck",
        "polaroid camera strap",
        "bracelet with handmade beads",
    ],
}

DEFAULT_CHARACTER_DESCRIPTIONS = {
    "fantasy": (
        "A young adventurer with windswept auburn hair and sharp green eyes, wearing "
        "worn leather armour under a travel cloak and an ornate pendant with a faint glow."
    ),
    "scifi": (
        "A lean starship engineer with a silver undercut and amber eyes, wearing a "
        "utilitarian jumpsuit with modular panels and a wrist-mounted holo communicator."
    ),
    "school": (
        "A curious student with a dark brown curly bob and hazel eyes, wearing a school "
        "uniform with personal touches and headphones resting around the neck."
    ),
}


def random_character_attributes(theme: str, rng: random.Random | None = None) -> list[dict[str, str]]:
    rng = rng or random.Random()
    return [
        {"label": "Gender", "value": rng.choice(_GENDERS)},
        {"label": "Age", "value": rng.choice(_AGES)},
        {"label": "Body type", "value": rng.choice(_BODY_TYPES)},
        {"label": "Ethnicity", "value": rng.choice(_ETHNICITIES)},
        {"label": "Eyes", "value": rng.choice(_EYES)},
        {"label": "Hair", "value": f"{rng.choice(_HAIR_COLORS)}, {rng.choice(_HAIR_STYLES)}"},
        {"label": "Outfit", "value": rng.choice(_OUTFITS.get(theme, _OUTFITS["fantasy"]))},
        {"label": "Unique accessory",
         "value": rng.choice(_ACCESSORIES.get(theme, _ACCESSORIES["fantasy"]))},
    ]


# ── Renderers ────────────────────────────────────────────


def chapter_text_prompt(story: StoryState, panel_count: int) -> str:
    ctx = build_context(story)
    ctx["panel_count"] = panel_count
    return render_prompt(CHAPTER_TEXT_TEMPLATE, ctx)


def reference_page_prompt(story: StoryState, panel_count: int) -> str:
    ctx = build_context(story)
    ctx["panel_count"] = panel_count
    return render_prompt(REFERENCE_PAGE_TEMPLATE, ctx)


def panel_prompt(
    story: StoryState,
    draft: PanelDraft,
    *,
    number: int,
    camera: str,
    character_description: str | None,
    npcs: Sequence[NPC],
    from_page: bool = False,
) -> str:
    ctx = build_context(story, character_description=character_description, npcs=npcs)
    ctx.update(number=number, description=draft.description, camera=camera)
    return render_prompt(PANEL_FROM_PAGE_TEMPLATE if from_page else PANEL_TEMPLATE, ctx)


def panel_batch_prompt(
    story: StoryState,
    drafts: Sequence[PanelDraft],
    cameras: Sequence[str],
    *,
    character_description: str | None,
    npcs: Sequence[NPC],
) -> str:
    ctx = build_context(story, character_description=character_description, npcs=npcs)
    ctx["panel_count"] = len(drafts)
    ctx["shots"] = [
        {"number": i + 1, "description": d.description, "camera": cam}
        for i, (d, cam) in enumerate(zip(drafts, cameras))
    ]
    return render_prompt(PANEL_BATCH_TEMPLATE, ctx)


def npc_portrait_prompt(theme: str, name: str, description: str) -> str:
    return render_prompt(NPC_PORTRAIT_TEMPLATE, {
        "theme": theme, "name": name, "description": description,
    })


def protagonist_portrait_prompt(theme: str, character_description: str) -> str:
    return render_prompt(PROTAGONIST_PORTRAIT_TEMPLATE, {
        "theme": theme, "character_description": character_description,
    })


def character_description_prompt(theme: str, rng: random.Random | None = None) -> str:
    return render_prompt(CHARACTER_DESCRIPTION_TEMPLATE, {
        "theme": theme, "attributes": random_character_attributes(theme, rng),
    })


def audio_briefs_prompt(story: StoryState, drafts: Sequence[PanelDraft], panel_limit: int) -> str:
    ctx = build_context(story, panels=drafts)
    ctx["panel_limit"] = panel_limit
    return render_prompt(AUDIO_BRIEFS_TEMPLATE, ctx)


def fallback_choices_prompt(story: StoryState, drafts: Sequence[PanelDraft]) -> str:
    ctx = build_context(story)
    ctx["narratives"] = ctx["narratives"] + [d.narrative for d in drafts]
    return render_prompt(FALLBACK_CHOICES_TEMPLATE, ctx)


def ending_prompt(story: StoryState, axis: MoodAxis, panel_count: int) -> str:
    ctx = build_context(story)
    ctx.update(axis=axis, tone=ENDING_TONES[axis], panel_count=panel_count)
    return render_prompt(ENDING_TEMPLATE, ctx)
