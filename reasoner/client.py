# reasoner/client.py
import base64
import io
import re
import time
from typing import Any, Optional, Protocol, Type, TypeVar

from langchain_core.messages import HumanMessage, SystemMessage
from PIL import Image
from pydantic import BaseModel, ValidationError

from runner.budget import ExecutionContext
from runner.errors import ErrorCategory, ExecutionError
from runner.logger import elapsed_ms, log

from . import config
from .config import AgentRoleConfig

S = TypeVar("S", bound=BaseModel)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class ModelClient(Protocol):
    def ask(self, prompt: str, schema: Type[S], image: Optional[Image.Image] = None,
            system_prompt: Optional[str] = None) -> S:
        ...


def image_to_data_url(img: Image.Image, quality: int = 85) -> str:
    buffered = io.BytesIO()
    if img.mode in ('RGBA', 'P', 'LA'):
        img = img.convert('RGB')
    img.save(buffered, format="JPEG", quality=quality)
    return "data:image/jpeg;base64," + base64.b64encode(buffered.getvalue()).decode('utf-8')


def parse_json_output(content: Any, schema: Type[S]) -> S:
    if isinstance(content, list):
        content = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    text = _FENCE.sub("", str(content).strip()).strip()
    try:
        return schema.model_validate_json(text)
    except ValidationError as e:
        raise ExecutionError(f"Model returned invalid {schema.__name__}: {e}", ErrorCategory.TRANSIENT) from e


class LangChainModelClient:
    """
    Adapts any LangChain chat model to the ModelClient protocol.
    Every call is checked against and charged to the run's budget ledger.
    """

    def __init__(self, llm: Any, model_name: str, context: Optional[ExecutionContext] = None):
        self.llm = llm
        self.model_name = model_name
        self.context = context

    def ask(self, prompt: str, schema: Type[S], image: Optional[Image.Image] = None,
            system_prompt: Optional[str] = None) -> S:
        if self.context is not None:
            self.context.ledger.check_model_call_budget()

        messages = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        if image is not None:
            messages.append(HumanMessage(content=[
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image_to_data_url(image)}},
            ]))
        else:
            messages.append(HumanMessage(content=prompt))

        start = time.time()
        try:
            response = self.llm.invoke(messages)
        except ExecutionError:
            raise
        except Exception as e:
            log("ERROR", "model_call_failed", "Model call failed", model=self.model_name, error=str(e))
            raise ExecutionError(f"Model call failed: {e}", ErrorCategory.TRANSIENT) from e

        usage = getattr(response, "usage_metadata", None) or {}
        if self.context is not None and usage:
            cached = (usage.get("input_token_details") or {}).get("cache_read", 0)
            self.context.ledger.consume_tokens(self.model_name, usage.get("input_tokens", 0),
                                               usage.get("output_tokens", 0), cached)
        log("DEBUG", "model_call", f"{schema.__name__} answered", model=self.model_name,
            duration_ms=elapsed_ms(start, time.time()), tokens=usage.get("total_tokens"))
        return parse_json_output(response.content, schema)


def create_chat_model(role: AgentRoleConfig):
    """Builds the LangChain chat model configured for a role (AzureChatOpenAI unless provider is 'openai')."""
    from langchain_openai import AzureChatOpenAI, ChatOpenAI

    if role.provider == "openai":
        return ChatOpenAI(model=role.model_name, temperature=role.temperature)
    return AzureChatOpenAI(
        azure_deployment=role.model_name,
        azure_endpoint=config.AZURE_OPENAI_ENDPOINT,
        api_version=config.AZURE_OPENAI_API_VERSION,
        temperature=role.temperature,
    )


def create_model_client(role: AgentRoleConfig, context: Optional[ExecutionContext] = None) -> LangChainModelClient:
    return LangChainModelClient(create_chat_model(role), role.model_name, context)
