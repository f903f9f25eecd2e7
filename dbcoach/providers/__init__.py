"""DB.Coach provider layer.

The provider layer is the only way models are called in the pipeline.
All LLM interactions go through LiteLLMProvider via the TextGenerator interface.
"""

from dbcoach.providers.base import TextGenerator
from dbcoach.providers.litellm_provider import LiteLLMProvider
from dbcoach.providers.registry import load_model_config, load_pipeline_config

__all__ = [
    "LiteLLMProvider",
    "TextGenerator",
    "load_model_config",
    "load_pipeline_config",
]
