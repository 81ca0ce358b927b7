"""
Hardware-accelerated inference backend.

This module handles:
- Detecting a CUDA or Apple MPS device through torch
- Loading tokenizer and model onto that device
- Streaming chat completions that stop as soon as the request is cancelled

torch and transformers are imported when the backend is loaded, so a host
without them falls back to the CPU engine instead of failing at import time.
"""

import asyncio
import importlib
import importlib.util
import logging
from threading import Thread
from typing import AsyncIterator, List, Optional

from .cancellation import CancellationToken
from .config import config
from .engine import ModelInfo, PrimaryBackend, ProgressCallback, StreamChunk, StreamingEngine
from .errors import BackendUnavailable

logger = logging.getLogger(__name__)


def get_torch_dtype(torch, dtype_str: str = "auto"):
    """
    Convert dtype string to torch dtype.

    Args:
        torch: The imported torch module
        dtype_str: String representation of dtype ("auto", "float16", "bfloat16", "float32")

    Returns:
        torch.dtype or "auto"
    """
    if dtype_str == "auto":
        return "auto"

    dtype_map = {
        "float16": torch.float16,
        "fp16": torch.float16,
        "bfloat16": torch.bfloat16,
        "bf16": torch.bfloat16,
        "float32": torch.float32,
        "fp32": torch.float32,
    }

    return dtype_map.get(dtype_str.lower(), torch.float16)


def get_model_info(model) -> dict:
    """
    Get information about the loaded model.

    Args:
        model: The loaded model

    Returns:
        Dictionary with model information
    """
    try:
        num_params = sum(p.numel() for p in model.parameters())
        return {
            "device": str(model.device),
            "dtype": str(model.dtype),
            "num_parameters": num_params,
            "num_parameters_millions": round(num_params / 1_000_000, 2),
        }
    except Exception as e:
        logger.warning(f"Could not get model info: {e}")
        return {}


def _stopping_criteria(torch, transformers, *tokens: CancellationToken):
    """Stop generation once any of the tokens is cancelled."""

    class CancelCriteria(transformers.StoppingCriteria):
        def __call__(self, input_ids, scores, **kwargs):
            stop = any(token.cancelled for token in tokens)
            return torch.full(
                (input_ids.shape[0],), stop, dtype=torch.bool, device=input_ids.device
            )

    return transformers.StoppingCriteriaList([CancelCriteria()])


class AcceleratedEngine(StreamingEngine):
    """Streams chat completions from a model resident on an accelerator."""

    def __init__(self, model, tokenizer, torch, transformers, max_new_tokens: Optional[int] = None):
        """
        Initialize the engine.

        Args:
            model: The loaded language model
            tokenizer: The loaded tokenizer
            torch: The imported torch module
            transformers: The imported transformers module
            max_new_tokens: Token limit per reply (default: config.MAX_NEW_TOKENS)
        """
        self.model = model
        self.tokenizer = tokenizer
        self.device = model.device
        self.max_new_tokens = max_new_tokens or config.MAX_NEW_TOKENS
        self._torch = torch
        self._transformers = transformers

    def _generate(self, failure: dict, **generation_kwargs):
        try:
            with self._torch.no_grad():
                self.model.generate(**generation_kwargs)
        except Exception as e:
            failure["error"] = e
            # Unblock the consumer waiting on the streamer
            generation_kwargs["streamer"].end()

    async def stream_complete(
        self,
        messages: List[dict],
        temperature: float,
        seed: int,
        cancel_token: CancellationToken,
    ) -> AsyncIterator[StreamChunk]:
        """
        Generate a streaming response for a multi-turn conversation.

        Generation runs in a background thread; text is yielded as the
        streamer produces it. Cancelling the token stops the thread at the
        next generated token.

        Args:
            messages: List of message dicts with 'role' and 'content'
            temperature: Sampling temperature (0 means greedy)
            seed: Random seed for reproducible sampling
            cancel_token: Token checked by the generation thread

        Yields:
            StreamChunk deltas, then a final chunk with done=True and usage
        """
        text = self.tokenizer.apply_chat_template(
            messages, tokenize=False, add_generation_prompt=True
        )
        inputs = self.tokenizer(text, return_tensors="pt").to(self.device)
        prompt_tokens = int(inputs.input_ids.shape[1])

        streamer = self._transformers.TextIteratorStreamer(
            self.tokenizer, skip_prompt=True, skip_special_tokens=True
        )
        abandoned = CancellationToken()
        self._transformers.set_seed(seed)

        generation_kwargs = dict(
            **inputs,
            streamer=streamer,
            max_new_tokens=self.max_new_tokens,
            do_sample=temperature > 0,
            stopping_criteria=_stopping_criteria(
                self._torch, self._transformers, cancel_token, abandoned
            ),
            pad_token_id=self.tokenizer.eos_token_id,
        )
        if temperature > 0:
            generation_kwargs["temperature"] = temperature

        failure: dict = {}
        thread = Thread(
            target=self._generate, args=(failure,), kwargs=generation_kwargs, daemon=True
        )
        thread.start()

        completion = ""
        pieces = iter(streamer)
        try:
            while True:
                piece = await asyncio.to_thread(next, pieces, None)
                if piece is None:
                    break
                if piece:
                    completion += piece
                    yield StreamChunk(delta=piece)

            if "error" in failure:
                raise failure["error"]

            completion_tokens = len(self.tokenizer.encode(completion, add_special_tokens=False))
            yield StreamChunk(
                delta="",
                done=True,
                usage={
                    "prompt_tokens": prompt_tokens,
                    "completion_tokens": completion_tokens,
                    "total_tokens": prompt_tokens + completion_tokens,
                },
            )
        finally:
            abandoned.cancel()
            await asyncio.to_thread(thread.join)


class AcceleratedBackend(PrimaryBackend):
    """Primary backend running transformers models on CUDA or MPS."""

    name = "accelerated"

    def __init__(self, catalog=None, torch_dtype: Optional[str] = None, use_gpu: Optional[bool] = None):
        """
        Initialize the backend.

        Args:
            catalog: (model_id, size_class) pairs offered to the user
            torch_dtype: Data type for model weights (default: config.TORCH_DTYPE)
            use_gpu: Allow accelerator use at all (default: config.USE_GPU)
        """
        self.catalog = catalog if catalog is not None else config.MODEL_CATALOG
        self.torch_dtype = torch_dtype or config.TORCH_DTYPE
        self.use_gpu = config.USE_GPU if use_gpu is None else use_gpu
        self.device: Optional[str] = None
        self._torch = None
        self._transformers = None

    def probe_capability(self) -> bool:
        if not self.use_gpu:
            logger.info("Accelerator use disabled by configuration")
            return False
        return importlib.util.find_spec("torch") is not None

    async def load(self) -> None:
        try:
            self._torch = await asyncio.to_thread(importlib.import_module, "torch")
            self._transformers = await asyncio.to_thread(importlib.import_module, "transformers")
        except ImportError as e:
            raise BackendUnavailable(f"Failed to load inference library: {e}") from e
        logger.info(f"Loaded torch {self._torch.__version__}, transformers {self._transformers.__version__}")

    def _require_libraries(self):
        if self._torch is None or self._transformers is None:
            raise BackendUnavailable("Inference library not loaded")
        return self._torch, self._transformers

    async def request_adapter(self) -> Optional[str]:
        torch, _ = self._require_libraries()

        if torch.cuda.is_available():
            self.device = "cuda"
            name = torch.cuda.get_device_name(0)
            logger.info(f"GPU detected: {name}")
            logger.info(f"CUDA version: {torch.version.cuda}")
            return name

        mps = getattr(torch.backends, "mps", None)
        if mps is not None and mps.is_available():
            self.device = "mps"
            logger.info("Apple MPS device detected")
            return "Apple MPS"

        logger.warning("No GPU detected")
        self.device = None
        return None

    def list_models(self) -> List[ModelInfo]:
        return [ModelInfo(model_id, size_class) for model_id, size_class in self.catalog]

    def _load_model(self, model_id: str, dtype):
        model = self._transformers.AutoModelForCausalLM.from_pretrained(
            model_id, dtype=dtype, trust_remote_code=True
        )
        model.to(self.device)
        model.eval()
        return model

    async def construct(self, model_id: str, progress_callback: ProgressCallback) -> AcceleratedEngine:
        """
        Load tokenizer and model onto the detected accelerator.

        Args:
            model_id: Hugging Face model ID (e.g., "Qwen/Qwen2.5-0.5B-Instruct")
            progress_callback: Receives phase text and completion fraction

        Returns:
            Ready-to-use AcceleratedEngine

        Raises:
            BackendUnavailable: If no accelerator was granted
        """
        torch, transformers = self._require_libraries()
        if self.device is None:
            raise BackendUnavailable("No accelerator adapter selected")

        logger.info(f"Loading model: {model_id}")
        logger.info(f"Device: {self.device}")
        logger.info(f"Torch dtype: {self.torch_dtype}")

        progress_callback(f"Loading tokenizer for {model_id}", 0.05)
        tokenizer = await asyncio.to_thread(
            transformers.AutoTokenizer.from_pretrained, model_id, trust_remote_code=True
        )

        progress_callback("Downloading model (first run downloads weights)", 0.2)
        dtype = get_torch_dtype(torch, self.torch_dtype)
        model = await asyncio.to_thread(self._load_model, model_id, dtype)

        info = get_model_info(model)
        if info:
            logger.info(
                f"Model loaded: {info.get('num_parameters_millions', '?')}M parameters "
                f"on {info.get('device', '?')} ({info.get('dtype', '?')})"
            )
        progress_callback("Model loaded into memory", 1.0)
        return AcceleratedEngine(model, tokenizer, torch, transformers)
