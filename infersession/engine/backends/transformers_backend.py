"""Decoding backend on top of PyTorch + Transformers."""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Sequence

from ..batch import BatchSlot
from ..config import BackendConfig
from ..errors import InitializationFailure
from .base import BaseBackend

if TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)

_BYTE_FALLBACK_RE = re.compile(r"^<0x([0-9A-Fa-f]{2})>$")


class TransformersBackend(BaseBackend):
    """
    Backend for causal LMs loadable with `AutoModelForCausalLM`.

    Context memory is one `DynamicCache` per sequence lane. Logits are kept
    only for the slots of the last decode call that asked for them.

    Thread Safety:
        This backend is NOT thread-safe. The owning session serializes calls.

    Example:
        >>> backend = TransformersBackend(BackendConfig(n_ctx=2048))
        >>> backend.load("Qwen/Qwen2.5-0.5B-Instruct")
        >>> session = InferenceSession.create(backend, ["<|im_end|>"])
    """

    backend_name = "transformers"

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def __init__(self, config: BackendConfig | None = None) -> None:
        self._config = config or BackendConfig()
        self._config.validate()
        self._model = None
        self._tokenizer = None
        self._model_path: str | None = None
        self._device: str = self._config.device
        self._dtype = None
        self._generator = None
        self._byte_decoder: dict[str, int] | None = None
        self._eos_ids: set[int] = set()

        self._caches: dict[int, Any] = {}
        self._lane_lengths: dict[int, int] = defaultdict(int)
        self._logits: dict[int, torch.Tensor] = {}

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> BackendConfig:
        return self._config

    @property
    def model(self):
        """Access the underlying model (for advanced use cases)."""
        return self._model

    @property
    def tokenizer(self):
        return self._tokenizer

    @property
    def device(self) -> str:
        return self._device

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str, **kwargs) -> None:
        """Load model and tokenizer.

        Args:
            model_path: Local path or HF Hub model identifier.
            trust_remote_code: Passed to from_pretrained (default: False).
            **kwargs: Additional kwargs passed to the model's from_pretrained().

        Raises:
            InitializationFailure: the model or tokenizer could not be loaded.
        """
        from infersession.runtime import check_backend_required, resolve_device, resolve_dtype

        check_backend_required()

        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        self._device = resolve_device(self._config.device)
        self._dtype = resolve_dtype(self._config.dtype)
        trust_remote_code = kwargs.pop("trust_remote_code", False)

        try:
            self._tokenizer = AutoTokenizer.from_pretrained(model_path, trust_remote_code=trust_remote_code)
            self._model = AutoModelForCausalLM.from_pretrained(
                model_path,
                torch_dtype=self._dtype,
                trust_remote_code=trust_remote_code,
                **kwargs,
            )
        except (OSError, ValueError, RuntimeError) as exc:
            logger.error("Could not load model at %s: %s", model_path, exc)
            raise InitializationFailure(f"Could not load model at {model_path}: {exc}") from exc

        self._model.to(self._device)
        self._model.eval()
        self._model_path = model_path

        self._generator = torch.Generator(device="cpu")
        if self._config.seed is not None:
            self._generator.manual_seed(self._config.seed)

        self._eos_ids = self._collect_eos_ids()
        self._byte_decoder = self._build_byte_decoder()
        self.clear_memory(True)
        logger.info(
            "Loaded %s on %s (%s), n_ctx=%d, n_batch=%d",
            model_path,
            self._device,
            self._config.dtype,
            self._config.n_ctx,
            self._config.n_batch,
        )

    def unload(self) -> None:
        """Unload the model and free accelerator memory."""
        import gc
        import torch

        self.clear_memory(True)
        del self._model
        del self._tokenizer
        self._model = None
        self._tokenizer = None

        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    # -------------------------------------------------------------------------
    # Backend primitives
    # -------------------------------------------------------------------------

    def tokenize(self, text: str, add_leading_marker: bool) -> list[int]:
        self._ensure_loaded()
        ids = list(self._tokenizer.encode(text, add_special_tokens=False))
        bos = self._tokenizer.bos_token_id
        if add_leading_marker and bos is not None:
            ids.insert(0, int(bos))
        return ids

    def decode(self, slots: Sequence[BatchSlot]) -> bool:
        self._ensure_loaded()
        import torch
        from transformers import DynamicCache

        self._logits = {}
        if not slots:
            logger.warning("decode called with an empty batch")
            return False

        # A slot shared by several lanes is written into each lane's memory.
        per_lane: dict[int, list[tuple[int, BatchSlot]]] = defaultdict(list)
        for idx, slot in enumerate(slots):
            for lane in slot.seq_ids:
                per_lane[lane].append((idx, slot))

        for lane, items in per_lane.items():
            if self._lane_lengths[lane] + len(items) > self._config.n_ctx:
                logger.warning(
                    "lane %d would exceed n_ctx=%d (have %d, adding %d)",
                    lane,
                    self._config.n_ctx,
                    self._lane_lengths[lane],
                    len(items),
                )
                return False

        with torch.no_grad():
            for lane, items in per_lane.items():
                cache = self._caches.get(lane)
                if cache is None:
                    cache = DynamicCache()
                    self._caches[lane] = cache

                # Split long prompts into n_batch-sized chunks.
                chunk = self._config.n_batch
                for start in range(0, len(items), chunk):
                    part = items[start : start + chunk]
                    input_ids = torch.tensor([[s.token_id for _, s in part]], dtype=torch.long, device=self._device)
                    position_ids = torch.tensor([[s.position for _, s in part]], dtype=torch.long, device=self._device)
                    outputs = self._model(
                        input_ids=input_ids,
                        position_ids=position_ids,
                        past_key_values=cache,
                        use_cache=True,
                    )
                    cache = outputs.past_key_values
                    self._caches[lane] = cache
                    self._lane_lengths[lane] += len(part)

                    for k, (idx, slot) in enumerate(part):
                        if slot.wants_logits and idx not in self._logits:
                            self._logits[idx] = outputs.logits[0, k, :].detach().float()

        return True

    def sample_next(self, logits_index: int) -> int:
        import torch

        logits = self._logits.get(logits_index)
        if logits is None:
            raise ValueError(f"No logits for batch slot {logits_index}; was it decoded with wants_logits?")

        temperature = self._config.temperature
        if temperature == 0:
            return int(torch.argmax(logits).item())

        probs = torch.softmax(logits / temperature, dim=-1).cpu()
        return int(torch.multinomial(probs, num_samples=1, generator=self._generator).item())

    def is_end_of_generation(self, token_id: int) -> bool:
        return int(token_id) in self._eos_ids

    def token_to_bytes(self, token_id: int) -> bytes:
        self._ensure_loaded()
        piece = self._tokenizer.convert_ids_to_tokens(int(token_id))
        if piece is None:
            return b""

        m = _BYTE_FALLBACK_RE.match(piece)
        if m:
            return bytes([int(m.group(1), 16)])

        if self._byte_decoder is not None and all(ch in self._byte_decoder for ch in piece):
            return bytes(self._byte_decoder[ch] for ch in piece)

        # SentencePiece marks word starts with U+2581.
        return piece.replace("▁", " ").encode("utf-8")

    def clear_memory(self, full_reset: bool) -> None:
        self._caches.clear()
        self._lane_lengths.clear()
        self._logits = {}
        if full_reset and self._generator is not None and self._config.seed is not None:
            self._generator.manual_seed(self._config.seed)

    def context_window_size(self) -> int:
        return self._config.n_ctx

    def synchronize(self) -> None:
        if self._device.startswith("cuda"):
            import torch

            torch.cuda.synchronize()

    # -------------------------------------------------------------------------
    # Model queries
    # -------------------------------------------------------------------------

    def model_description(self) -> str:
        if self._model is None:
            return "unloaded"
        model_type = getattr(self._model.config, "model_type", "unknown")
        return f"{model_type} {self.model_param_count() / 1e9:.1f}B {self._config.dtype}"

    def model_size_bytes(self) -> int:
        if self._model is None:
            return 0
        total = sum(p.numel() * p.element_size() for p in self._model.parameters())
        total += sum(b.numel() * b.element_size() for b in self._model.buffers())
        return int(total)

    def model_param_count(self) -> int:
        if self._model is None:
            return 0
        return int(sum(p.numel() for p in self._model.parameters()))

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")

    def _collect_eos_ids(self) -> set[int]:
        ids: set[int] = set()
        tok_eos = self._tokenizer.eos_token_id
        if tok_eos is not None:
            ids.add(int(tok_eos))
        gen_cfg = getattr(self._model, "generation_config", None)
        gen_eos = getattr(gen_cfg, "eos_token_id", None)
        if isinstance(gen_eos, int):
            ids.add(gen_eos)
        elif isinstance(gen_eos, (list, tuple)):
            ids.update(int(i) for i in gen_eos)
        return ids

    def _build_byte_decoder(self) -> dict[str, int] | None:
        """Inverse of the GPT-2 byte-to-unicode map for byte-level BPE vocabularies."""
        vocab = self._tokenizer.get_vocab()
        if "Ċ" not in vocab and not any(tok.startswith("Ġ") for tok in vocab):
            return None
        from transformers.models.gpt2.tokenization_gpt2 import bytes_to_unicode

        return {ch: b for b, ch in bytes_to_unicode().items()}
