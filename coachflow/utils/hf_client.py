"""
HuggingFace Client - Model loading and inference wrapper

Implements both collaborator contracts used by the collection engine:
- Text generation: generate() (single-shot) and generate_stream() (fragments)
- Structured extraction: extract() (JSON output enforced against a schema)

Responsibilities:
- Load model with optional 4-bit quantization
- Format (system, user) prompts per model family (via PromptFormatter)
- Stream generated text fragments from a background generation thread
- Generate JSON with repair, then enforce the declared output schema
- Optional diagnostics (token counts, latency)

Design principles:
- Dependency injection (no singleton)
- Fail fast on critical errors (CUDA OOM at load)
- Generation budgets via max_time; exceeding one surfaces as a normal
  generation failure in the caller, not a crash
- Draining generate_stream() yields the same text as generate()
"""

import json
import logging
import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    BitsAndBytesConfig,
    TextIteratorStreamer
)

from coachflow.utils.prompt_formatter import PromptFormatter

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_CPU = "cpu"
DEVICE_MAP_AUTO = "auto"

# Seconds to wait for the next streamed fragment before giving up
DEFAULT_STREAM_TIMEOUT = 60.0

JSON_TYPES = {
    "object": dict,
    "array": list,
    "string": str,
    "boolean": bool,
    "number": (int, float),
    "integer": int,
}


class SchemaViolation(ValueError):
    """Structured output does not satisfy the declared schema"""
    pass


class HuggingFaceClient:
    """Local causal LM serving both text generation and structured extraction"""

    def __init__(
        self,
        model_name: str,
        load_in_4bit: bool = True,
        device: str = DEVICE_CUDA,
        auto_format: bool = True
    ) -> None:
        """
        Load tokenizer and model for one Hugging Face checkpoint.

        Args:
            model_name: Hub id or local path of the checkpoint
            load_in_4bit: NF4-quantize the weights (CUDA only)
            device: "cuda" or "cpu"
            auto_format: Lay prompts out with PromptFormatter

        Raises:
            RuntimeError: If device is "cuda" and no GPU is visible
            torch.cuda.OutOfMemoryError: If the weights do not fit
        """
        if device == DEVICE_CUDA and not torch.cuda.is_available():
            raise RuntimeError("device='cuda' but torch sees no GPU")

        self.model_name = model_name
        self.device = device
        self.auto_format = auto_format

        logger.info(f"Loading {model_name} on {device} (4-bit={load_in_4bit})")

        self.tokenizer = self._load_tokenizer(model_name)
        self.formatter: Optional[PromptFormatter] = (
            PromptFormatter(model_name, self.tokenizer) if auto_format else None
        )
        self.model = self._load_model(model_name, load_in_4bit and device == DEVICE_CUDA)
        self.model.eval()

        logger.info(f"Model ready: {self.get_model_info()}")

    @staticmethod
    def _load_tokenizer(model_name: str):
        tokenizer = AutoTokenizer.from_pretrained(model_name)

        # generate() needs a pad id; reuse EOS where the checkpoint has one
        if tokenizer.pad_token is None:
            if tokenizer.eos_token is not None:
                tokenizer.pad_token = tokenizer.eos_token
            else:
                tokenizer.add_special_tokens({'pad_token': '[PAD]'})
                logger.warning(f"{model_name} has no EOS token; added [PAD]")

        return tokenizer

    def _load_model(self, model_name: str, quantize: bool):
        on_gpu = self.device == DEVICE_CUDA
        quantization_config = None
        if quantize:
            quantization_config = BitsAndBytesConfig(
                load_in_4bit=True,
                bnb_4bit_quant_type="nf4",
                bnb_4bit_compute_dtype=torch.bfloat16,
                bnb_4bit_use_double_quant=True
            )

        try:
            model = AutoModelForCausalLM.from_pretrained(
                model_name,
                quantization_config=quantization_config,
                device_map=DEVICE_MAP_AUTO if on_gpu else None,
                torch_dtype=torch.bfloat16 if on_gpu else torch.float32
            )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"Out of GPU memory loading {model_name}; try load_in_4bit=True")
            raise

        if on_gpu:
            gib = 1024 ** 3
            logger.info(
                f"GPU memory after load: {torch.cuda.memory_allocated() / gib:.2f} GiB allocated, "
                f"{torch.cuda.memory_reserved() / gib:.2f} GiB reserved"
            )
        return model

    def is_loaded(self) -> bool:
        return getattr(self, 'model', None) is not None and getattr(self, 'tokenizer', None) is not None

    # =========================================================================
    # Text generation
    # =========================================================================

    def _prepare_inputs(self, system_prompt: Optional[str], user_prompt: str):
        if self.formatter:
            prompt = self.formatter.format_chat(system_prompt, user_prompt)
        else:
            prompt = f"{system_prompt}\n\n{user_prompt}" if system_prompt else user_prompt

        inputs = self.tokenizer(prompt, return_tensors="pt")
        if self.device == DEVICE_CUDA:
            inputs = inputs.to(DEVICE_CUDA)
        return inputs

    def _generation_kwargs(self, inputs, max_tokens: int, temperature: float,
                           max_time: Optional[float]) -> Dict[str, Any]:
        kwargs = {
            "input_ids": inputs.input_ids,
            "attention_mask": inputs.attention_mask,
            "max_new_tokens": max_tokens,
            "do_sample": temperature > 0,
            "pad_token_id": self.tokenizer.pad_token_id,
        }
        if temperature > 0:
            kwargs["temperature"] = temperature
        if max_time is not None:
            kwargs["max_time"] = max_time
        return kwargs

    def generate(
        self,
        system_prompt: Optional[str],
        user_prompt: str,
        max_tokens: int = 256,
        temperature: float = 0.3,
        max_time: Optional[float] = None,
        return_diagnostics: bool = False
    ) -> Union[str, Dict[str, Any]]:
        """
        Generate a single-shot completion

        Args:
            system_prompt: Instructions/persona
            user_prompt: User-turn content
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature (0.0 = deterministic)
            max_time: Generation budget in seconds (None = unbounded)
            return_diagnostics: Include token counts and timing

        Returns:
            str: Generated text (if return_diagnostics=False)
            dict: {'text': str, 'diagnostics': {...}} (if return_diagnostics=True)

        Raises:
            RuntimeError: If model not loaded
            torch.cuda.OutOfMemoryError: If GPU runs out of memory
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        start_time = time.time()
        inputs = self._prepare_inputs(system_prompt, user_prompt)
        prompt_tokens = inputs.input_ids.shape[1]

        try:
            with torch.no_grad():
                outputs = self.model.generate(
                    **self._generation_kwargs(inputs, max_tokens, temperature, max_time)
                )
        except torch.cuda.OutOfMemoryError:
            logger.error(f"CUDA OOM during generation (prompt tokens: {prompt_tokens})")
            raise

        generated_ids = outputs[0][prompt_tokens:]
        generated_text = self.tokenizer.decode(generated_ids, skip_special_tokens=True)

        if return_diagnostics:
            completion_tokens = len([
                t for t in generated_ids
                if t != self.tokenizer.pad_token_id
            ])
            return {
                "text": generated_text,
                "diagnostics": {
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": prompt_tokens + completion_tokens,
                    "latency_ms": (time.time() - start_time) * 1000,
                }
            }

        return generated_text

    def generate_stream(
        self,
        system_prompt: Optional[str],
        user_prompt: str,
        max_tokens: int = 256,
        temperature: float = 0.3,
        max_time: Optional[float] = None,
        stream_timeout: float = DEFAULT_STREAM_TIMEOUT
    ) -> Iterator[str]:
        """
        Generate a completion as a lazy sequence of text fragments

        Generation runs on a background thread feeding a TextIteratorStreamer;
        fragments are yielded as they are decoded. Errors raised on the
        generation thread are re-raised here once the stream ends.

        Args:
            system_prompt: Instructions/persona
            user_prompt: User-turn content
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature
            max_time: Generation budget in seconds
            stream_timeout: Max seconds to wait between fragments

        Yields:
            str: Text fragments (non-empty)

        Raises:
            RuntimeError: If model not loaded
            queue.Empty: If no fragment arrives within stream_timeout
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        inputs = self._prepare_inputs(system_prompt, user_prompt)
        streamer = TextIteratorStreamer(
            self.tokenizer,
            skip_prompt=True,
            skip_special_tokens=True,
            timeout=stream_timeout
        )
        kwargs = self._generation_kwargs(inputs, max_tokens, temperature, max_time)
        kwargs["streamer"] = streamer

        errors: List[BaseException] = []

        def run_generation():
            try:
                with torch.no_grad():
                    self.model.generate(**kwargs)
            except Exception as e:
                errors.append(e)
                # Unblock the consumer
                streamer.end()

        thread = threading.Thread(target=run_generation, daemon=True)
        thread.start()

        fragment_count = 0
        for fragment in streamer:
            if fragment:
                fragment_count += 1
                yield fragment

        thread.join()
        if errors:
            raise errors[0]

        logger.debug(f"Streamed {fragment_count} fragments")

    # =========================================================================
    # Structured output
    # =========================================================================

    def generate_json(
        self,
        system_prompt: Optional[str],
        user_prompt: str,
        max_tokens: int = 512,
        temperature: float = 0.0,
        max_time: Optional[float] = None
    ) -> str:
        """
        Generate JSON-formatted completion with repair attempts

        Note: This returns a string, not parsed JSON. Caller must json.loads().
        """
        text = self.generate(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            max_tokens=max_tokens,
            temperature=temperature,
            max_time=max_time
        )
        return repair_json(text)

    def extract(
        self,
        system_prompt: str,
        user_prompt: str,
        images: Optional[Sequence[str]] = None,
        schema: Optional[Dict[str, Any]] = None,
        max_tokens: int = 512,
        max_time: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Structured extraction: JSON output enforced against a schema

        The loaded model is text-only, so image references are listed in
        the prompt rather than passed as pixels.

        Args:
            system_prompt: Extraction instructions
            user_prompt: Message + context
            images: Image references attached to the message
            schema: JSON-schema subset (object/properties/required/enum/type)
            max_tokens: Maximum tokens to generate
            max_time: Generation budget in seconds

        Returns:
            dict: Parsed output with unknown fields dropped

        Raises:
            json.JSONDecodeError: If output is not valid JSON after repair
            SchemaViolation: If output is not an object or misses required keys
        """
        if images:
            refs = "\n".join(f"- {ref}" for ref in images)
            user_prompt = f"{user_prompt}\n\nATTACHED IMAGES:\n{refs}"

        if schema is not None:
            system_prompt = (
                f"{system_prompt}\n\nRespond with a single JSON object matching "
                f"this schema:\n{json.dumps(schema)}"
            )

        raw = self.generate_json(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            max_tokens=max_tokens,
            max_time=max_time
        )
        parsed = json.loads(raw)

        if schema is None:
            return parsed

        cleaned, dropped = enforce_schema(parsed, schema)
        if dropped:
            logger.warning(f"Dropped fields not matching schema: {dropped}")
        return cleaned

    def get_model_info(self) -> Dict[str, Any]:
        """
        Get information about loaded model

        Returns:
            dict: Model metadata
        """
        info = {
            "model_name": self.model_name,
            "device": self.device,
            "is_loaded": self.is_loaded(),
            "auto_format": self.auto_format
        }

        if self.formatter:
            info["formatter"] = self.formatter.get_info()

        return info


def repair_json(text: str) -> str:
    """
    Attempt to repair common JSON formatting issues

    Only handles object output (not arrays).

    Args:
        text: Raw LLM output

    Returns:
        str: Cleaned JSON string (may still fail json.loads)
    """
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]

    text = text.strip()

    first_brace = text.find('{')
    last_brace = text.rfind('}')

    if first_brace == -1:
        logger.warning("No braces found in JSON repair")
        return text

    if last_brace < first_brace:
        # Truncated output (e.g. generation budget hit): keep the tail
        text = text[first_brace:]
    else:
        text = text[first_brace:last_brace + 1]

    # Naive balancing (doesn't account for braces inside strings)
    open_count = text.count('{')
    close_count = text.count('}')

    if open_count > close_count:
        missing = open_count - close_count
        text += '}' * missing
        logger.debug(f"Added {missing} closing braces")

    elif close_count > open_count:
        diff = close_count - open_count
        for _ in range(diff):
            last_close = text.rfind('}')
            if last_close != -1:
                text = text[:last_close] + text[last_close + 1:]
        logger.debug(f"Removed {diff} extra closing braces")

    return text


def enforce_schema(data: Any, schema: Dict[str, Any], path: str = "$") -> Tuple[Any, List[str]]:
    """
    Enforce a JSON-schema subset on parsed output

    Supported keywords: type, properties, required, enum,
    additionalProperties (object schema = allow any keys).

    Unknown object keys and properties whose value violates the
    declared type/enum are dropped (reported), never coerced.

    Args:
        data: Parsed JSON value
        schema: Schema node
        path: JSON path for reporting

    Returns:
        tuple: (cleaned value, list of dropped paths)

    Raises:
        SchemaViolation: If the root type is wrong or required keys are missing
    """
    dropped: List[str] = []

    expected_type = schema.get("type")
    if expected_type and not _matches_type(data, expected_type):
        raise SchemaViolation(f"{path}: expected {expected_type}, got {type(data).__name__}")

    if "enum" in schema and data not in schema["enum"]:
        raise SchemaViolation(f"{path}: {data!r} not in {schema['enum']}")

    if not isinstance(data, dict) or "properties" not in schema:
        return data, dropped

    properties = schema["properties"]
    additional = schema.get("additionalProperties", False)

    missing = [key for key in schema.get("required", []) if key not in data]
    if missing:
        raise SchemaViolation(f"{path}: missing required keys {missing}")

    cleaned = {}
    for key, value in data.items():
        child_path = f"{path}.{key}"

        if key not in properties:
            if isinstance(additional, dict):
                try:
                    cleaned[key], child_dropped = enforce_schema(value, additional, child_path)
                    dropped.extend(child_dropped)
                except SchemaViolation as e:
                    logger.debug(f"Dropping {child_path}: {e}")
                    dropped.append(child_path)
            else:
                dropped.append(child_path)
            continue

        try:
            cleaned[key], child_dropped = enforce_schema(value, properties[key], child_path)
            dropped.extend(child_dropped)
        except SchemaViolation as e:
            if key in schema.get("required", []):
                raise
            logger.debug(f"Dropping {child_path}: {e}")
            dropped.append(child_path)

    return cleaned, dropped


def _matches_type(value: Any, expected: Union[str, List[str]]) -> bool:
    if isinstance(expected, list):
        return any(_matches_type(value, t) for t in expected)

    if expected == "null":
        return value is None

    python_type = JSON_TYPES.get(expected)
    if python_type is None:
        return True

    # bool is an int subclass; keep them apart
    if expected in ("number", "integer") and isinstance(value, bool):
        return False

    return isinstance(value, python_type)
