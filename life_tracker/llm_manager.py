import os
import logging
import hashlib
import json
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from enum import Enum

import requests
from openai import OpenAI, RateLimitError, APIConnectionError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from . import config
from .errors import LLMError

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant analyzing personal journal and life-tracking data."

_client: Optional[OpenAI] = None


class LLMBackend(Enum):
    """Enum for supported LLM backends."""
    OPENAI = "openai"
    OLLAMA = "ollama"

    @classmethod
    def from_string(cls, backend_str: str) -> 'LLMBackend':
        """Convert string to LLMBackend enum, with error handling."""
        try:
            return cls(backend_str.lower())
        except (ValueError, AttributeError):
            logging.warning(f"Invalid backend '{backend_str}'. Using OpenAI API.")
            return cls.OPENAI


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Dict[str, int] = field(default_factory=lambda: {
        'prompt_tokens': 0, 'completion_tokens': 0, 'total_tokens': 0
    })


def get_active_model() -> str:
    """Get the currently active model, preferring CLI selection over backend default."""
    if config.CLI_SELECTED_MODEL:
        return config.CLI_SELECTED_MODEL
    backend = LLMBackend.from_string(config.CURRENT_LLM_BACKEND)
    return config.DEFAULT_LLM_MODEL[backend.value]


def create_client() -> OpenAI:
    """Create and return an OpenAI API client."""
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise LLMError("OPENAI_API_KEY not found in environment")

    return OpenAI(
        api_key=api_key,
        base_url=config.OPENAI_BASE_URL,
        timeout=config.LLM_TIMEOUT_SECONDS
    )


def get_client() -> OpenAI:
    global _client
    if _client is None:
        _client = create_client()
    return _client


@retry(
    retry=retry_if_exception_type((RateLimitError, APIConnectionError)),
    stop=stop_after_attempt(config.LLM_MAX_RETRIES),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True
)
def _openai_completion(messages: List[Dict[str, str]], model: str, temperature: float,
                       max_tokens: Optional[int]) -> LLMResponse:
    params: Dict[str, Any] = {
        'model': model,
        'messages': messages,
        'temperature': temperature,
    }
    if max_tokens:
        params['max_tokens'] = max_tokens

    response = get_client().chat.completions.create(**params)

    usage = {'prompt_tokens': 0, 'completion_tokens': 0, 'total_tokens': 0}
    if getattr(response, 'usage', None):
        usage = {
            'prompt_tokens': response.usage.prompt_tokens,
            'completion_tokens': response.usage.completion_tokens,
            'total_tokens': response.usage.total_tokens,
        }
        logging.info(f"Token usage: {usage['prompt_tokens']} prompt + "
                     f"{usage['completion_tokens']} completion = "
                     f"{usage['total_tokens']} total")

    content = response.choices[0].message.content if response.choices else None
    return LLMResponse(content=(content or '').strip(), model=model, usage=usage)


@retry(
    retry=retry_if_exception_type(requests.ConnectionError),
    stop=stop_after_attempt(config.LLM_MAX_RETRIES),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True
)
def _ollama_completion(prompt: str, system_prompt: str, model: str, temperature: float,
                       max_tokens: Optional[int]) -> LLMResponse:
    options: Dict[str, Any] = {'temperature': temperature}
    if max_tokens:
        options['num_predict'] = max_tokens

    response = requests.post(
        f"{config.OLLAMA_BASE_URL}/api/generate",
        json={
            "model": model,
            "system": system_prompt,
            "prompt": prompt,
            "stream": False,
            "options": options,
        },
        timeout=config.LLM_TIMEOUT_SECONDS
    )
    response.raise_for_status()
    data = response.json()

    prompt_tokens = data.get('prompt_eval_count', 0)
    completion_tokens = data.get('eval_count', 0)
    return LLMResponse(
        content=(data.get('response') or '').strip(),
        model=model,
        usage={
            'prompt_tokens': prompt_tokens,
            'completion_tokens': completion_tokens,
            'total_tokens': prompt_tokens + completion_tokens,
        }
    )


def query_llm(prompt: str, system_prompt: str = DEFAULT_SYSTEM_PROMPT, temperature: float = 0.0,
              max_tokens: Optional[int] = None, model: Optional[str] = None) -> LLMResponse:
    """
    Send a prompt to the active backend and return the response.

    Args:
        prompt: The user prompt
        system_prompt: Instructions sent as the system message
        temperature: Controls randomness (0.0 for consistent responses)
        max_tokens: Completion length cap, backend default when None
        model: Override for the active model

    Raises:
        LLMError: if the backend fails or returns an empty response
    """
    backend = LLMBackend.from_string(config.CURRENT_LLM_BACKEND)
    active_model = model or get_active_model()
    logging.debug(f"Using {backend.value} backend with model: {active_model}")

    try:
        if backend == LLMBackend.OPENAI:
            messages = [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt}
            ]
            result = _openai_completion(messages, active_model, temperature, max_tokens)
        else:
            result = _ollama_completion(prompt, system_prompt, active_model, temperature, max_tokens)
    except LLMError:
        raise
    except Exception as e:
        logging.error(f"{backend.value} API error: {e}")
        raise LLMError(f"{backend.value} API error: {e}") from e

    if not result.content:
        raise LLMError("Empty response from LLM")
    return result


def parse_llm_json_response(response: str, required_fields: list = None, defaults: dict = None) -> Dict:
    """Parse JSON from LLM response with validation and defaults.

    Args:
        response: Raw response string from LLM
        required_fields: List of fields that should be present in response
        defaults: Dictionary of default values for missing fields

    Returns:
        Parsed and validated JSON dictionary
    """
    if not response:
        raise ValueError("Empty response from LLM")

    # Extract JSON if it's embedded in other text
    json_start = response.find('{')
    json_end = response.rfind('}') + 1

    if json_start >= 0 and json_end > json_start:
        result = json.loads(response[json_start:json_end])
    else:
        raise ValueError("No JSON object found in response")

    if required_fields and defaults:
        missing_fields = [f for f in required_fields if f not in result]
        if missing_fields:
            logging.warning(f"Missing fields in LLM response: {missing_fields}")
            for f in missing_fields:
                result[f] = defaults.get(f)

    return result


def calculate_cost(model: str, usage: Dict[str, int]) -> float:
    """Estimated cost in dollars; unknown models are priced as gpt-4.1-mini."""
    pricing = config.MODEL_PRICING.get(model, config.MODEL_PRICING['gpt-4.1-mini'])
    input_cost = (usage.get('prompt_tokens', 0) / 1000) * pricing['input']
    output_cost = (usage.get('completion_tokens', 0) / 1000) * pricing['output']
    return input_cost + output_cost


def generate_cache_key(function_name: str, params: Any, user_id: Optional[str] = None) -> str:
    data = json.dumps({'functionName': function_name, 'params': params, 'userId': user_id},
                      sort_keys=True, default=str)
    digest = hashlib.sha256(data.encode('utf-8')).hexdigest()
    return f"{function_name}_{digest[:16]}"
