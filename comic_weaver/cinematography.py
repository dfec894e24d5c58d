"""Heuristic cinematography for panels that arrive without camera hints.

Keyword families in the panel description pick a shot; anything else gets
one of four general-purpose setups chosen by a stable hash of the
description, so re-rendering a panel keeps its framing while neighbouring
panels vary.
"""

import re

from pydantic import BaseModel


class Cinematography(BaseModel):
    shot: str
    angle: str
    lens_mm: int
    eyeline: str
    composition: str
    framing: str
    subject_scale_hint: str
    movement: str | None = None

    def as_prompt(self) -> str:
        lines = [
            f"Shot: {self.shot}",
            f"Angle: {self.angle}",
            f"Lens: {self.lens_mm}mm",
            f"Eyeline: {self.eyeline}",
            f"Composition: {self.composition}",
            f"Framing: {self.framing}",
            f"Subject scale: {self.subject_scale_hint}",
        ]
        if self.movement:
            lines.append(f"Movement: {self.movement}")
        return "\n".join(lines)


_DIALOGUE = re.compile(r"\b(dialogue|conversation|talks?|speaks?|whispers?|argues?)\b")
_WIDE = re.compile(r"\b(crowd|cityscape|landscape|wide|panoramic|battle|market|plaza|rooftops?)\b")
_ACTION = re.compile(
    r"\b(run|running|jump|leap|fight|chase|explosion|blast|dash|attack|strike|punch|kick)\b"
)
_STEALTH = re.compile(r"\b(sneak|stealth|hide|shadow|peek|spy|eavesdrop)\b")
_INTIMATE = re.compile(r"\b(hug|holds?|hand in hand|kiss|close|tender|quiet moment|comforts?)\b")
_THREAT = re.compile(r"\b(monster|enemy|threat|danger|gun|weapon|blade|creature|beast)\b")


DIALOGUE = Cinematography(
    shot="medium over-the-shoulder two-shot",
    angle="slight high angle for the listener character",
    lens_mm=35,
    eyeline="characters look at each other, not at camera",
    composition="rule of thirds, faces placed on intersecting points; background depth cues",
    framing="include full heads with comfortable headroom; no cropping of chins or foreheads",
    subject_scale_hint="subjects ~55-65% of frame height; ensure entire heads visible",
)

WIDE = Cinematography(
    shot="wide establishing shot",
    angle="slight high angle to capture environment",
    lens_mm=24,
    eyeline="main subject looks within scene context, not into camera",
    composition="leading lines guide toward subject; strong foreground/midground/background separation",
    framing="full-body framing with generous headroom and footroom; do not crop head or feet",
    subject_scale_hint="subject ~35-45% of frame height to keep full body in frame",
)

STEALTH = Cinematography(
    shot="medium long over-the-shoulder peek",
    angle="slight high angle looking down corridor/alley",
    lens_mm=28,
    eyeline="subject looks past frame edge; no eye contact with camera",
    composition="use foreground occlusion (door frame, foliage) to frame subject",
    framing="subject placed at one third; ample headroom; no cropping at joints",
    subject_scale_hint="subject ~45-55% of frame height; maintain full head visibility",
)

INTIMATE = Cinematography(
    shot="medium close-up",
    angle="gentle 10 degree high angle",
    lens_mm=50,
    eyeline="soft side gaze; do not look at camera unless specified",
    composition="rule of thirds; negative space supports mood",
    framing="include full head with comfortable headroom; avoid ear or crown cropping",
    subject_scale_hint="head-and-shoulders within frame; ~60-70% height; no crown crop",
)

VARIANTS: tuple[Cinematography, ...] = (
    Cinematography(
        shot="medium shot",
        angle="eye-level",
        lens_mm=35,
        eyeline="looking within scene; not at camera",
        composition="rule of thirds, balanced background",
        framing="include full head with headroom; hands visible if gesturing",
        subject_scale_hint="subject ~55-65% of frame height; keep entire head visible",
    ),
    Cinematography(
        shot="full shot",
        angle="slight high angle",
        lens_mm=28,
        eyeline="gaze toward subject of interest in scene",
        composition="leading lines from environment; off-center placement",
        framing="full body fits; no cropping of head or feet",
        subject_scale_hint="subject ~40-50% of frame height; adjust camera back to keep feet and head",
    ),
    Cinematography(
        shot="over-the-shoulder",
        angle="eye-level behind protagonist",
        lens_mm=40,
        eyeline="toward focus object/person; not at camera",
        composition="foreground shoulder as frame; subject at one third",
        framing="maintain headroom; avoid tight forehead crop",
        subject_scale_hint="primary subject ~50-60% of frame height; full head visible",
    ),
    Cinematography(
        shot="wide environmental shot",
        angle="slight low angle for grandeur",
        lens_mm=24,
        eyeline="subject looks into scene space",
        composition="strong foreground depth; subject small but readable",
        framing="ample breathing room on all sides; keep horizon level",
        subject_scale_hint="subject ~30-40% of frame height to avoid cropping",
    ),
)


def stable_hash(text: str) -> int:
    """Non-negative 32-bit string hash, stable across processes."""
    h = 0
    for ch in text:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def _action(threat: bool) -> Cinematography:
    return Cinematography(
        shot="three-quarter action shot",
        angle="slight low angle to amplify power" if threat else "dynamic dutch tilt (subtle)",
        lens_mm=35,
        eyeline="subject focuses on target or path; avoid direct camera gaze",
        composition="diagonals and motion lines; off-center subject for direction of travel",
        framing="keep hands and feet within frame during motion; preserve headroom",
        movement="implied motion blur streaks and speed lines, debris for impact",
        subject_scale_hint="subject ~50-60% of frame height; ensure no limb or head cropping",
    )


def choose_cinematography(description: str) -> Cinematography:
    lower = description.lower()
    if _DIALOGUE.search(lower):
        return DIALOGUE
    if _WIDE.search(lower):
        return WIDE
    if _ACTION.search(lower):
        return _action(bool(_THREAT.search(lower)))
    if _STEALTH.search(lower):
        return STEALTH
    if _INTIMATE.search(lower):
        return INTIMATE
    return VARIANTS[stable_hash(description) % len(VARIANTS)]


def specs_to_prompt(specs: dict | None, description: str) -> str:
    """Camera block for a panel prompt: explicit specs win over the heuristic."""
    if specs:
        return "\n".join(f"{key}: {value}" for key, value in specs.items() if value not in (None, ""))
    return choose_cinematography(description).as_prompt()
