import argparse
import json
import os
import sys

from dotenv import load_dotenv
from PIL import Image

load_dotenv()

from reasoner.client import create_model_client
from reasoner.config import AgentRoleConfig
from runner.budget import ExecutionContext
from runner.config import METRICS_PORT, LocatorSettings
from runner.errors import ExecutionError
from runner.metrics import start_metrics_server
from runner.perception.element_locator import ElementLocatorTools
from runner.perception.ui_element import InMemoryElementRepository, UiElement
from runner.screenshot_service import ScreenshotService
from runner.tools import TestContextDataTools, ToolRegistry


def load_catalog(path: str) -> InMemoryElementRepository:
    """
    Catalog format: a JSON list of elements, e.g.
    [{"name": "Login button", "description": "...", "screenshot": "login.png", "zoom_in_required": false}]
    Screenshot paths are relative to the catalog file.
    """
    base = os.path.dirname(os.path.abspath(path))
    with open(path, encoding="utf-8") as f:
        entries = json.load(f)
    elements = []
    for entry in entries:
        reference = entry.pop("screenshot", None)
        if reference:
            entry["screenshot"] = Image.open(os.path.join(base, reference)).convert("RGB")
        elements.append(UiElement(**entry))
    return InMemoryElementRepository(elements)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Locate a UI element on a screenshot")
    parser.add_argument("description", help="Description of the element to locate")
    parser.add_argument("--screenshot", required=True, help="Screenshot of the application under test")
    parser.add_argument("--catalog", required=True, help="JSON catalog of known UI elements")
    parser.add_argument("--data", help="Test data the element's content depends on")
    args = parser.parse_args(argv)

    if not os.getenv("AZURE_OPENAI_API_KEY") and not os.getenv("OPENAI_API_KEY"):
        print("Error: AZURE_OPENAI_API_KEY (or OPENAI_API_KEY) not found in environment or .env file")
        return 2

    if METRICS_PORT:
        start_metrics_server(METRICS_PORT)

    context = ExecutionContext.from_env()
    client = create_model_client(AgentRoleConfig.from_env("element_locator"), context)
    screenshots = ScreenshotService(capture_fn=lambda: Image.open(args.screenshot))
    locator = ElementLocatorTools(load_catalog(args.catalog), client, screenshots, LocatorSettings())
    registry = ToolRegistry(locator, TestContextDataTools(context), context=context)

    try:
        location = registry.invoke("locate_element", {"element_description": args.description,
                                                      "element_specific_data": args.data})
    except ExecutionError as e:
        print(json.dumps({"found": False, "category": e.category.value, "error": e.message}, indent=2))
        return 1
    print(json.dumps({"found": True, **location.model_dump()}, indent=2))
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nExecution stopped by user.")
