# reasoner/prompts.py
from typing import Dict, List, Optional

BOUNDING_BOX_SYSTEM_PROMPT = """
You are a UI element localization assistant working on screenshots of a desktop or web application.

Given the description of ONE target UI element and a screenshot, return the bounding box of every
place on the screenshot where that exact element is visible.

Coordinates are integers on a normalized grid from 0 to {coordinate_range} on both axes, relative to the
screenshot you receive: (x1, y1) is the top-left corner and (x2, y2) the bottom-right one.
If the element is not visible, return an empty list of boxes.

Respond ONLY with JSON:
{{"boxes": [{{"x1": int, "y1": int, "x2": int, "y2": int}}], "message": "short note"}}
"""

SELECTION_SYSTEM_PROMPT = """
You are validating UI element detections. The screenshot shows candidate regions drawn as labeled
rectangles. Each label is a short id. Pick the ONE rectangle that best matches the described element.

If none of the rectangles matches, reject all of them.

Respond ONLY with JSON:
{"accepted": true|false, "candidate_id": "id of the chosen rectangle or null", "rationale": "short reason"}
"""

CANDIDATE_SELECTION_SYSTEM_PROMPT = """
You select which of several stored UI element records matches an element the test needs to interact with.
Use the element descriptions, their location details and the current screenshot.

Respond ONLY with JSON:
{"success": true|false, "selected_element_id": "element_N or null", "message": "short reason"}
"""

VERIFICATION_SYSTEM_PROMPT = """
You verify the outcome of a UI test step by looking at a screenshot of the application under test.
Decide whether the expected results are visible on the screen right now.

Respond ONLY with JSON:
{"success": true|false, "message": "what you observed"}
"""


def bounding_box_system_prompt(coordinate_range: int) -> str:
    return BOUNDING_BOX_SYSTEM_PROMPT.format(coordinate_range=coordinate_range).strip()


def bounding_box_prompt(element_block: str, test_data: Optional[str] = None) -> str:
    prompt = f"Find the following UI element on the screenshot.\n\n{element_block}"
    if test_data:
        # Data-dependent elements look different for every data set
        prompt += ("\n\nThe element's visible content depends on test data. "
                   f"Locate the instance that corresponds to this data: {test_data}")
    return prompt


def selection_prompt(element_block: str, candidate_ids: List[str], test_data: Optional[str] = None) -> str:
    prompt = (f"Target element:\n{element_block}\n\n"
              f"Labeled candidates on the screenshot: {', '.join(candidate_ids)}")
    if test_data:
        prompt += f"\n\nThe element content depends on this test data: {test_data}"
    return prompt


def candidate_selection_prompt(target_description: str, candidates: Dict[str, str],
                               test_data: Optional[str] = None) -> str:
    rendered = "\n\n".join(f"[{cid}]\n{block}" for cid, block in candidates.items())
    prompt = (f"The test needs this element: {target_description}\n\n"
              f"Stored candidates:\n{rendered}")
    if test_data:
        prompt += f"\n\nAvailable data related to this element: {test_data}"
    return prompt


def verification_prompt(step_description: str, expected_results: str, test_data: Optional[str] = None) -> str:
    prompt = f"Executed step: {step_description}\nExpected results: {expected_results}"
    if test_data:
        prompt += f"\nTest data: {test_data}"
    return prompt
