"""
In-process stand-ins for inference backends, stores and the UI.

Used by the test modules so the session runtime can be exercised without
torch, model downloads or a terminal.
"""

import queue
import threading
import time
from contextlib import nullcontext
from types import SimpleNamespace
from typing import List, Optional, Sequence

from localchat.engine import (
    AssetBundle,
    CompletionEngine,
    FallbackBackend,
    ModelInfo,
    PrimaryBackend,
    StreamChunk,
    StreamingEngine,
)
from localchat.errors import BackendUnavailable
from localchat.events import SessionListener
from localchat.storage import MemoryKeyValueStore


class ScriptedStreamingEngine(StreamingEngine):
    """Yields a fixed list of deltas, optionally failing afterwards."""

    def __init__(self, deltas: Sequence[str], error: Optional[Exception] = None, name: str = "scripted"):
        self.deltas = list(deltas)
        self.error = error
        self.name = name
        self.calls: List[dict] = []
        self.closed = False

    async def stream_complete(self, messages, temperature, seed, cancel_token):
        self.calls.append(
            {"messages": list(messages), "temperature": temperature, "seed": seed}
        )
        try:
            for delta in self.deltas:
                yield StreamChunk(delta=delta)
            if self.error is not None:
                raise self.error
            yield StreamChunk(delta="", done=True, usage={"completion_tokens": len(self.deltas)})
        finally:
            self.closed = True


class ScriptedCompletionEngine(CompletionEngine):
    """Returns a fixed reply in one piece."""

    def __init__(self, reply: str = "", error: Optional[Exception] = None, on_call=None):
        self.reply = reply
        self.error = error
        self.on_call = on_call
        self.prompts: List[str] = []

    async def complete(self, prompt, max_tokens, temperature):
        self.prompts.append(prompt)
        if self.on_call is not None:
            self.on_call()
        if self.error is not None:
            raise self.error
        return self.reply


class FakePrimaryBackend(PrimaryBackend):
    """Accelerated backend whose every step can be made to fail."""

    def __init__(
        self,
        engine: Optional[StreamingEngine] = None,
        capable: bool = True,
        adapter: Optional[str] = "Fake GPU",
        load_error: Optional[Exception] = None,
        construct_error: Optional[Exception] = None,
        catalog: Sequence[ModelInfo] = (
            ModelInfo("tiny-model", "small"),
            ModelInfo("big-model", "large"),
        ),
    ):
        self.engine = engine or ScriptedStreamingEngine(["ok"])
        self.capable = capable
        self.adapter = adapter
        self.load_error = load_error
        self.construct_error = construct_error
        self.catalog = list(catalog)
        self.constructed: List[str] = []

    def probe_capability(self):
        return self.capable

    async def load(self):
        if self.load_error is not None:
            raise self.load_error

    async def request_adapter(self):
        return self.adapter

    def list_models(self):
        return list(self.catalog)

    async def construct(self, model_id, progress_callback):
        progress_callback(f"Loading {model_id}", 0.5)
        if self.construct_error is not None:
            raise self.construct_error
        self.constructed.append(model_id)
        progress_callback("Model loaded into memory", 1.0)
        return self.engine


class FakeFallbackBackend(FallbackBackend):
    """CPU backend returning a scripted engine."""

    def __init__(self, engine: Optional[CompletionEngine] = None, error: Optional[Exception] = None):
        self.engine = engine or ScriptedCompletionEngine("fallback reply")
        self.error = error

    async def load_assets(self):
        if self.error is not None:
            raise self.error
        return AssetBundle(model_id="fake-cpu-model", model_dir="/nonexistent")

    async def bootstrap(self, assets):
        return self.engine


def failing_primary() -> FakePrimaryBackend:
    return FakePrimaryBackend(load_error=BackendUnavailable("no accelerator library"))


def failing_fallback() -> FakeFallbackBackend:
    return FakeFallbackBackend(error=OSError("download failed"))


class RecordingListener(SessionListener):
    """Keeps every notification for later assertions."""

    def __init__(self):
        self.progress = []
        self.ready = []
        self.appended = []
        self.deltas = []
        self.errors = []

    def on_progress(self, phase, percent=None):
        self.progress.append((phase, percent))

    def on_ready(self, kind):
        self.ready.append(kind)

    def on_message_appended(self, role, text):
        self.appended.append((role, text))

    def on_stream_delta(self, partial_text):
        self.deltas.append(partial_text)

    def on_error(self, message):
        self.errors.append(message)


class CancelAfterDeltas(SessionListener):
    """Requests cancellation once a number of deltas has been shown."""

    def __init__(self, controller, count: int):
        self.controller = controller
        self.count = count
        self.seen = 0

    def on_stream_delta(self, partial_text):
        self.seen += 1
        if self.seen == self.count:
            self.controller.cancel()


class FailingStore(MemoryKeyValueStore):
    """Store whose writes raise, as a full or locked disk would."""

    def __init__(self, initial=None, fail_reads: bool = False):
        super().__init__(initial)
        self.fail_reads = fail_reads
        self.write_attempts = 0

    def get(self, key):
        if self.fail_reads:
            raise OSError("store unreadable")
        return super().get(key)

    def set(self, key, value):
        self.write_attempts += 1
        raise OSError("disk full")

    def remove(self, key):
        raise OSError("disk full")


class CountingStore(MemoryKeyValueStore):
    """Memory store counting writes per key."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.writes = {}

    def set(self, key, value):
        self.writes[key] = self.writes.get(key, 0) + 1
        super().set(key, value)


# -- stand-ins for torch and transformers -------------------------------------


class FakeTensor:
    """Batch of token id rows with the attributes the engines read."""

    def __init__(self, rows, device="cpu"):
        self.rows = rows
        self.device = device

    @property
    def shape(self):
        return (len(self.rows), len(self.rows[0]))

    def __getitem__(self, index):
        return self.rows[index]


class FakeEncoding(dict):
    """Tokenizer output: a mapping of model inputs with ``.to(device)``."""

    @property
    def input_ids(self):
        return self["input_ids"]

    def to(self, device):
        return self


class FakeTokenizer:
    """Whitespace tokenizer with a growing vocabulary."""

    eos_token_id = 0

    def __init__(self, template_error: bool = False):
        self.template_error = template_error
        self.words = ["<eos>"]

    def _id(self, word):
        if word not in self.words:
            self.words.append(word)
        return self.words.index(word)

    def apply_chat_template(self, messages, tokenize=False, add_generation_prompt=True):
        if self.template_error:
            raise ValueError("tokenizer has no chat template")
        lines = [f"<{m['role']}> {m['content']}" for m in messages]
        return " ".join(lines) + " <assistant>"

    def encode(self, text, add_special_tokens=False):
        return [self._id(word) for word in text.split()]

    def __call__(self, text, return_tensors="pt"):
        return FakeEncoding(input_ids=FakeTensor([self.encode(text)]))

    def decode(self, ids, skip_special_tokens=True):
        return " ".join(self.words[i] for i in ids if not (skip_special_tokens and i == 0))


class FakeStreamer:
    """Thread-safe text queue iterated by the consumer, like TextIteratorStreamer."""

    def __init__(self, tokenizer, skip_prompt=True, skip_special_tokens=True):
        self._queue = queue.Queue()

    def put_text(self, text):
        self._queue.put(text)

    def end(self):
        self._queue.put(None)

    def __iter__(self):
        return self

    def __next__(self):
        text = self._queue.get(timeout=5)
        if text is None:
            raise StopIteration
        return text


class FakeStoppingCriteria:
    pass


def fake_torch():
    return SimpleNamespace(
        no_grad=nullcontext,
        bool="bool",
        float16="float16",
        float32="float32",
        bfloat16="bfloat16",
        full=lambda size, fill, dtype=None, device=None: [fill] * size[0],
    )


def fake_transformers():
    seeds = []
    return SimpleNamespace(
        TextIteratorStreamer=FakeStreamer,
        StoppingCriteria=FakeStoppingCriteria,
        StoppingCriteriaList=list,
        set_seed=seeds.append,
        seeds=seeds,
    )


class FakeStreamingModel:
    """Emits scripted pieces into the streamer, honouring stopping criteria."""

    def __init__(self, pieces, error: Optional[Exception] = None, delay: float = 0.0):
        self.pieces = list(pieces)
        self.error = error
        self.delay = delay
        self.device = "cpu"
        self.kwargs = {}
        self.steps = 0
        self.stopped = False
        self.finished = threading.Event()

    def generate(self, input_ids=None, streamer=None, stopping_criteria=None, **kwargs):
        self.kwargs = kwargs
        try:
            for piece in self.pieces:
                if any(all(criteria(input_ids, None)) for criteria in stopping_criteria or []):
                    self.stopped = True
                    break
                streamer.put_text(piece)
                self.steps += 1
                if self.delay:
                    time.sleep(self.delay)
            if self.error is not None:
                raise self.error
            streamer.end()
        finally:
            self.finished.set()


class FakeCompletionModel:
    """Returns the prompt ids followed by the ids of a scripted reply."""

    def __init__(self, tokenizer: FakeTokenizer, reply: str):
        self.tokenizer = tokenizer
        self.reply = reply
        self.prompt_ids = None
        self.kwargs = {}

    def generate(self, input_ids=None, **kwargs):
        self.kwargs = kwargs
        self.prompt_ids = list(input_ids[0])
        return [self.prompt_ids + self.tokenizer.encode(self.reply)]
