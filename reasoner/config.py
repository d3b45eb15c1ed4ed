# reasoner/config.py
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from runner.retry import RetryPolicy

load_dotenv()

AZURE_OPENAI_ENDPOINT = os.getenv("AZURE_OPENAI_ENDPOINT", "https://your-openai-endpoint.openai.azure.com/")
AZURE_OPENAI_API_KEY = os.getenv("AZURE_OPENAI_API_KEY", "")
AZURE_OPENAI_API_VERSION = os.getenv("AZURE_OPENAI_API_VERSION", "2024-06-01")
MODEL_PROVIDER = os.getenv("MODEL_PROVIDER", "azure").lower()
DEFAULT_MODEL = os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME", "gpt-4o")


@dataclass(frozen=True)
class AgentRoleConfig:
    role: str
    model_name: str = DEFAULT_MODEL
    provider: str = MODEL_PROVIDER
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    temperature: float = 0.0

    @classmethod
    def from_env(cls, role: str) -> "AgentRoleConfig":
        """
        Role-scoped variables override the global ones, e.g. VERIFICATION_MODEL_NAME,
        VERIFICATION_MODEL_PROVIDER, VERIFICATION_MAX_RETRIES.
        """
        prefix = role.upper()
        timeout_default = int(os.getenv("VERIFICATION_TIMEOUT_MILLIS", "10000")) if role == "verification" else 10000
        return cls(
            role=role,
            model_name=os.getenv(f"{prefix}_MODEL_NAME", DEFAULT_MODEL),
            provider=os.getenv(f"{prefix}_MODEL_PROVIDER", MODEL_PROVIDER).lower(),
            retry_policy=RetryPolicy.from_env(prefix, timeout_millis=timeout_default),
            temperature=float(os.getenv(f"{prefix}_MODEL_TEMPERATURE", "0")),
        )
