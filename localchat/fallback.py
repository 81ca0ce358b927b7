"""
CPU fallback inference backend.

Used when no accelerator is available. A tiny instruction model snapshot is
fetched with huggingface_hub and run with transformers on the CPU. Replies
arrive in one piece; generation cannot be interrupted once started.
"""

import asyncio
import importlib
import logging
from typing import Optional

from .config import config
from .engine import AssetBundle, CompletionEngine, FallbackBackend

logger = logging.getLogger(__name__)

# Files needed to run a transformers checkpoint
SNAPSHOT_PATTERNS = [
    "*.json",
    "*.safetensors",
    "*.txt",
    "*.model",
    "*.tiktoken",
]


class CpuEngine(CompletionEngine):
    """Single-shot text generation on the CPU."""

    def __init__(self, model, tokenizer, torch):
        self.model = model
        self.tokenizer = tokenizer
        self._torch = torch

    def generate_text(self, prompt: str, max_tokens: int, temperature: float) -> str:
        """
        Generate a completion for a single prompt.

        Args:
            prompt: The full prompt, attachments included
            max_tokens: Maximum number of tokens to generate
            temperature: Sampling temperature (0 means greedy)

        Returns:
            Only the generated text
        """
        messages = [{"role": "user", "content": prompt}]
        try:
            text = self.tokenizer.apply_chat_template(
                messages, tokenize=False, add_generation_prompt=True
            )
        except Exception as e:
            logger.warning(f"Chat template failed, using raw prompt: {e}")
            text = prompt

        inputs = self.tokenizer(text, return_tensors="pt")
        input_length = inputs.input_ids.shape[1]
        logger.debug(f"Input length: {input_length} tokens")

        sampling = {"do_sample": temperature > 0}
        if temperature > 0:
            sampling["temperature"] = temperature

        with self._torch.no_grad():
            outputs = self.model.generate(
                **inputs,
                max_new_tokens=max_tokens,
                pad_token_id=self.tokenizer.eos_token_id,
                **sampling,
            )

        new_tokens = outputs[0][input_length:]
        return self.tokenizer.decode(new_tokens, skip_special_tokens=True).strip()

    async def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:
        return await asyncio.to_thread(self.generate_text, prompt, max_tokens, temperature)


class CpuFallbackBackend(FallbackBackend):
    """Fallback backend bootstrapped from a downloaded model snapshot."""

    name = "cpu"

    def __init__(self, model_id: Optional[str] = None, cache_dir: Optional[str] = None):
        """
        Initialize the fallback backend.

        Args:
            model_id: Hugging Face repo of the tiny model (default: config.FALLBACK_MODEL_ID)
            cache_dir: Optional download cache directory
        """
        self.model_id = model_id or config.FALLBACK_MODEL_ID
        self.cache_dir = cache_dir

    async def load_assets(self) -> AssetBundle:
        """Download (or reuse the cached) model snapshot."""
        hub = await asyncio.to_thread(importlib.import_module, "huggingface_hub")
        logger.info(f"Fetching fallback model snapshot: {self.model_id}")
        model_dir = await asyncio.to_thread(
            hub.snapshot_download,
            repo_id=self.model_id,
            cache_dir=self.cache_dir,
            allow_patterns=SNAPSHOT_PATTERNS,
        )
        logger.info(f"Fallback model available at {model_dir}")
        return AssetBundle(model_id=self.model_id, model_dir=model_dir)

    async def bootstrap(self, assets: AssetBundle) -> CpuEngine:
        """Load the snapshot into a CPU engine."""
        torch = await asyncio.to_thread(importlib.import_module, "torch")
        transformers = await asyncio.to_thread(importlib.import_module, "transformers")

        def _load():
            tokenizer = transformers.AutoTokenizer.from_pretrained(assets.model_dir)
            model = transformers.AutoModelForCausalLM.from_pretrained(
                assets.model_dir, dtype=torch.float32
            )
            model.eval()
            return tokenizer, model

        tokenizer, model = await asyncio.to_thread(_load)
        logger.info(f"Fallback engine ready: {assets.model_id} on cpu")
        return CpuEngine(model, tokenizer, torch)
