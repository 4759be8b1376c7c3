"""
Prompt templates for artwork object detection.
One builder per call type: discovery, reconciliation, count estimate,
detection (exhaustive / representative / area mass), verification and
accessibility descriptions. Every prompt spells out the exact JSON shape
the response schema expects.
"""

from typing import Dict, List, Sequence

from detection_types import CATEGORIES, ObjectKind


def get_system_prompt() -> str:
    """System prompt for consistent JSON formatting."""
    return "You are an expert at analyzing artworks for accessibility and cataloging. Return ONLY valid JSON. No extra text or explanations."


def get_discovery_prompt(max_kinds: int) -> str:
    """Kind discovery with size, segmentation and importance hints."""
    categories = ", ".join(CATEGORIES)
    return f"""You are labeling an artwork for accessibility and cataloging.

Task: Identify the unique OBJECT KINDS visible in this image, considering their artistic importance, size, and how they should be detected.

CRITICAL: Think about what makes this artwork meaningful. What are the SUBJECTS vs the CONTEXT?

== DEFINITIONS ==

A "kind" is a noun phrase category (e.g., "hound", "hunter", "demon", "mountain", "forest").
Each kind MUST correspond to at least one clearly visible element.

== LABEL GUIDELINES ==

- Use SINGULAR form (e.g., "demon" not "demons")
- Use lowercase (e.g., "hound" not "Hound")
- Be specific when visually distinct (e.g., "crossbowman" not just "person")
- Do NOT invent things from patterns in water/clouds/foliage

== TYPE (category) ==

type must be one of: {categories}

== ESTIMATED SIZE ==

How large is a TYPICAL INSTANCE of this kind, relative to the full image?
- "tiny": <2% of image area (distant birds, specks, tiny figures in vast landscape)
- "small": 2-10% of image (horses in landscape, people in crowd, background figures)
- "medium": 10-30% of image (group portrait subjects, main animals)
- "large": 30-60% of image (primary portrait subject, dominant figure)
- "giant": >60% of image (close-up face, single subject filling frame)

Size is about the OBJECT relative to the IMAGE, not real-world size.

== IMPORTANCE (artistic role) ==

- "primary": main subjects, focal points, narrative figures
- "secondary": supporting elements that add meaning
- "background": contextual/environmental elements (trees in a forest, clouds, rocks, water)

== SEGMENTATION (detection strategy) ==

- "exhaustive": detect EVERY instance separately (primary subjects, countable narrative elements)
- "representative": detect a FEW examples (3-8) of secondary elements with many similar instances
- "area_mass": detect as areas/masses, not instances (forest, crowd, sky, water, fields)

== ESTIMATED COUNT ==

- "few": 1-10, "moderate": 11-25, "many": 26-50, "very_many": 50+

== OUTPUT ==

JSON only:
{{"kinds":[{{"kind":"","type":"","estimated_count":"","estimated_size":"","segmentation":"","importance":""}}, ...]}}

Keep the list <= {max_kinds}. Prefer fewer, well-chosen kinds over exhaustive lists."""


def _kind_line(kind: ObjectKind, with_importance: bool = True) -> str:
    line = f"- {kind.label} ({kind.category}): {kind.estimated_count}, {kind.estimated_size}"
    if with_importance:
        line += f", {kind.importance}"
    return line


def get_reconciliation_prompt(
    full_kinds: Sequence[ObjectKind],
    quadrant_kinds: Dict[str, List[ObjectKind]],
    max_kinds: int,
) -> str:
    """
    Reconcile full-image and per-quadrant discoveries.

    Args:
        full_kinds: kinds discovered on the full image
        quadrant_kinds: quadrant tag -> kinds discovered on that 55% crop
        max_kinds: cap on the returned list

    Returns:
        Prompt asking for is_real / quadrants / detection_scale per kind
    """
    full_list = "\n".join(_kind_line(k) for k in full_kinds) or "(nothing found)"
    sections = []
    for name, kinds in quadrant_kinds.items():
        if not kinds:
            sections.append(f"{name.upper()}: (nothing found)")
        else:
            sections.append(f"{name.upper()}:\n" + "\n".join(_kind_line(k, with_importance=False) for k in kinds))
    quadrant_list = "\n\n".join(sections) or "(not analyzed)"

    return f"""You are reconciling object detection results from multiple views of an artwork.

The image was analyzed at two scales:
1. FULL IMAGE - seeing the complete artwork
2. QUADRANTS - four overlapping 55% crops (top-left, top-right, bottom-left, bottom-right)

== FULL IMAGE ANALYSIS ==
{full_list}

== QUADRANT ANALYSIS ==
{quadrant_list}

== YOUR TASK ==

Looking at the FULL IMAGE with complete context, reconcile these findings:

1. Filter artifacts: some quadrant detections may be WRONG (textures misread as objects,
   cloud shapes mistaken for animals, mountain ridges seen as figures). Mark these is_real=false.
2. For each REAL kind, list which quadrants actually contain instances of it.
3. Choose detection_scale:
   - "full": the object is large enough to detect reliably on the full image
   - "quadrant": the object is small/tiny or numerous and needs zoomed detection in its quadrants only

Return ALL real kinds, at most {max_kinds}, prioritizing primary/secondary importance.

JSON only:
{{"kinds":[{{"kind":"","type":"","is_real":true,"quadrants":["top-left"],"estimated_count":"","estimated_size":"","segmentation":"","importance":"","detection_scale":"full|quadrant"}}, ...]}}"""


def get_count_estimate_prompt(kind: ObjectKind) -> str:
    """Cheap per-region density check used by adaptive tiling."""
    return f"""You are counting instances of a specific object type in an image region.

Task: Estimate how many "{kind.label}" ({kind.category}) are clearly visible in this image.

Count categories:
- "few": 1-10 instances
- "moderate": 11-25 instances
- "many": 26-50 instances
- "very_many": 50+ instances

Rules:
- Only count clearly visible instances of "{kind.label}"
- Do not count partial/obscured instances
- Do not hallucinate from patterns in textures
- If none visible, return "few"

Output JSON only: {{"estimated_count": "few|moderate|many|very_many"}}"""


_DETECTION_OUTPUT = """Output JSON only:
{"objects":[{"label":"","type":"","box_2d":[xmin,ymin,xmax,ymax]}, ...]}
box_2d is normalized 0-1000."""


def get_exhaustive_detection_prompt(kind: ObjectKind) -> str:
    return f"""You are an expert computer vision annotator.

Task: find ALL visible instances of: "{kind.label}" ({kind.category})

Rules:
- Only return instances that are clearly visible.
- Boxes must be tight and accurate.
- Return an empty list if you see none.
- Use label exactly "{kind.label}" for all objects.

{_DETECTION_OUTPUT}"""


def get_representative_detection_prompt(kind: ObjectKind) -> str:
    return f"""You are an expert computer vision annotator.

Task: Detect 3-8 REPRESENTATIVE examples of: "{kind.label}" ({kind.category})
Choose examples that are:
- Spatially diverse (spread across different parts of the image)
- Clearly visible and well-defined
- Representative of the variety present

Do NOT try to detect every instance. Use label exactly "{kind.label}".

{_DETECTION_OUTPUT}"""


def get_area_mass_detection_prompt(kind: ObjectKind) -> str:
    return f"""You are detecting REGIONS/AREAS in an artwork, not individual instances.

Task: Find the main AREAS where "{kind.label}" ({kind.category}) appears in this image.

Rules:
- Draw bounding boxes around REGIONS/MASSES, not individual items
- For a forest: one box around the forested area, not each tree
- For clouds: boxes around cloud masses, not each cloud
- For a crowd: one box around the crowd area, not each person
- Typically 1-5 regions maximum
- Boxes can be large and encompassing

{_DETECTION_OUTPUT}"""


def get_detection_prompt(kind: ObjectKind) -> str:
    """
    Pick the detection prompt for a kind's segmentation strategy.

    Args:
        kind: the kind being detected

    Returns:
        Prompt string for exhaustive, representative or area_mass detection
    """
    if kind.segmentation == "area_mass":
        return get_area_mass_detection_prompt(kind)
    elif kind.segmentation == "representative":
        return get_representative_detection_prompt(kind)
    else:
        return get_exhaustive_detection_prompt(kind)


def get_verification_prompt(kind: ObjectKind, instance_count: int) -> str:
    """Review of a numbered-box overlay: wrong / corrections / missing / complete."""
    return f"""You are verifying bounding box annotations for: "{kind.label}" ({kind.category})

The image shows {instance_count} numbered box(es), labeled 0 to {instance_count - 1}.

CRITICAL: Be skeptical. Some boxes may be on objects that are NOT "{kind.label}" at all.

Your tasks:

1. WRONG BOXES (wrong_indices), CHECK THIS FIRST:
   Remove boxes where:
   - There is NO "{kind.label}" in or near the box
   - The box is on a DIFFERENT object type
   - The box is severely misplaced and does not cover the object

2. CORRECTIONS (corrections):
   For boxes that ARE on a real "{kind.label}" but are misaligned:
   - Provide the index and corrected [xmin, ymin, xmax, ymax] in 0-1000 coords
   - Only correct if the box is notably off; minor imperfections are OK

3. MISSING (missing):
   Find any CLEARLY VISIBLE "{kind.label}" instances that have NO box yet:
   - Provide box coordinates [xmin, ymin, xmax, ymax] for each
   - Be conservative and do NOT hallucinate from textures, patterns or shadows

4. COMPLETE (complete):
   Set true only if ALL visible "{kind.label}" instances are now correctly boxed.

Output JSON only:
{{"wrong_indices":[],"corrections":[{{"index":0,"box_2d":[xmin,ymin,xmax,ymax]}}],"missing":[{{"box_2d":[xmin,ymin,xmax,ymax]}}],"complete":false}}"""


def _position_words(box) -> str:
    cx = (box[0] + box[2]) / 2
    cy = (box[1] + box[3]) / 2
    h = "Left" if cx < 333 else "Right" if cx > 666 else "Center"
    v = "Background/Top" if cy < 333 else "Foreground/Bottom" if cy > 666 else "Midground"
    return f"{h}, {v}"


def get_description_prompt(objects: Sequence) -> str:
    """
    Accessibility description grounded on the verified object list.

    Args:
        objects: DetectedInstance list, usually the top-ranked ones

    Returns:
        Prompt asking for alt_text and long_description
    """
    context = "\n".join(f"- {o.label} ({o.type}) at {_position_words(o.box)}" for o in objects)
    return f"""You are an accessibility-focused describer for museum artworks.
You will receive an image and a list of verified objects with approximate locations.

VERIFIED OBJECTS (GROUND TRUTH):
{context or '(no objects provided)'}

RULES:
- Treat the verified list as factual; do not invent new objects.
- Use the locations to describe the scene in a stable left-to-right, foreground-to-background order.
- Aggregate repeats naturally (e.g., "a pack of hounds" instead of listing each).
- Describe only visible content; no symbolism, titles, dates, or artist intent.

OUTPUT:
Return only valid JSON with exactly these keys:
{{"alt_text":"","long_description":""}}

Alt text:
- 10-18 words, single sentence fragment, no final period.

Long description:
- One paragraph, ~150-220 words, present tense, plain language.
- Start with a brief overview, then a single consistent spatial pass."""
