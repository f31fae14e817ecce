"""Tests for the Segformer and rembg backends with stubbed models."""
from types import SimpleNamespace

import numpy as np
import pytest
import torch
import torch.nn.functional as F
import transformers
from PIL import Image

from config import ServiceConfig
from segmentation_backend import (
    ModelConfig,
    RembgBackend,
    RembgSegmenter,
    SegformerBackend,
    SegformerSegmenter,
    get_backend,
)

from conftest import make_pixels

# Resolve transformers' lazy attributes (which import torch._dynamo) before any
# fixture monkeypatches torch functions; torch._dynamo fails to import otherwise.
transformers.SegformerImageProcessor, transformers.AutoModelForSemanticSegmentation

SEGFORMER = ModelConfig(name="segformer-test", checkpoint="stub/segformer", input_size=64)


class StubProcessor:
    """Stands in for SegformerImageProcessor; records what it was built with."""

    pretrained_calls = []

    def __init__(self, size=8):
        self.size = size
        self.images = []

    @classmethod
    def from_pretrained(cls, checkpoint, **kwargs):
        cls.pretrained_calls.append((checkpoint, kwargs))
        return cls()

    def __call__(self, images, return_tensors):
        self.images.append(images)
        return {"pixel_values": torch.zeros(1, 3, self.size, self.size)}


class StubModel:
    """Returns fixed logits whatever the input."""

    pretrained_calls = []

    def __init__(self, logits=None):
        self.logits = logits if logits is not None else torch.zeros(1, 18, 4, 4)
        self.device = None

    @classmethod
    def from_pretrained(cls, checkpoint, **kwargs):
        cls.pretrained_calls.append((checkpoint, kwargs))
        return cls()

    def to(self, device):
        self.device = device
        return self

    def eval(self):
        return self

    def __call__(self, pixel_values):
        return SimpleNamespace(logits=self.logits)


def segformer_with(logits):
    processor = StubProcessor()
    segmenter = SegformerSegmenter(SEGFORMER, "cpu", processor, StubModel(logits), torch.float32)
    return segmenter, processor


@pytest.fixture
def cpu_only(monkeypatch):
    monkeypatch.setattr(torch.cuda, "is_available", lambda: False)
    monkeypatch.setattr(torch.backends.mps, "is_available", lambda: False)
    threads = []
    monkeypatch.setattr(torch, "set_num_threads", threads.append)
    return threads


@pytest.fixture
def stub_transformers(monkeypatch):
    import transformers

    StubProcessor.pretrained_calls = []
    StubModel.pretrained_calls = []
    monkeypatch.setattr(transformers, "SegformerImageProcessor", StubProcessor)
    monkeypatch.setattr(transformers, "AutoModelForSemanticSegmentation", StubModel)


class TestSegformerSegmenter:
    def test_mask_matches_buffer_size(self):
        segmenter, processor = segformer_with(torch.zeros(1, 18, 4, 4))

        mask = segmenter.segment(make_pixels(13, 7))

        assert (mask.width, mask.height) == (13, 7)
        assert mask.confidence.shape == (7, 13)
        assert processor.images[0].mode == "RGB"
        assert processor.images[0].size == (13, 7)

    def test_confidence_is_one_minus_background_probability(self):
        logits = torch.zeros(1, 3, 4, 4)
        logits[0, 0, :2] = 10.0   # background dominates the top half
        logits[0, 0, 2:] = -10.0
        segmenter, _ = segformer_with(logits)

        mask = segmenter.segment(make_pixels(13, 7))

        upsampled = F.interpolate(logits, size=(7, 13), mode="bilinear", align_corners=False)
        expected = (1.0 - torch.softmax(upsampled, dim=1)[0, 0]).numpy()
        assert np.allclose(mask.confidence, expected, atol=1e-5)
        assert mask.confidence[0, 0] < 0.01
        assert mask.confidence[-1, 0] > 0.99

    def test_uniform_logits_give_uniform_confidence(self):
        segmenter, _ = segformer_with(torch.zeros(1, 3, 4, 4))

        mask = segmenter.segment(make_pixels(5, 5))

        assert np.allclose(mask.confidence, 2.0 / 3.0, atol=1e-5)

    def test_dispose_drops_model(self):
        segmenter, _ = segformer_with(torch.zeros(1, 3, 4, 4))

        segmenter.dispose()

        assert segmenter.model is None
        assert segmenter.processor is None


class TestSegformerBackend:
    def test_initialize_falls_back_to_cpu(self, cpu_only):
        backend = SegformerBackend()

        assert backend.is_acceleration_available() is False
        assert backend.initialize() == "cpu"
        assert backend.device == "cpu"
        assert cpu_only == [4]

    def test_initialize_prefers_cuda(self, monkeypatch, cpu_only):
        monkeypatch.setattr(torch.cuda, "is_available", lambda: True)
        backend = SegformerBackend()

        assert backend.is_acceleration_available() is True
        assert backend.initialize() == "cuda"

    def test_initialize_uses_mps_without_cuda(self, monkeypatch, cpu_only):
        monkeypatch.setattr(torch.backends.mps, "is_available", lambda: True)

        assert SegformerBackend().initialize() == "mps"

    def test_default_configs_follow_service_config(self):
        cfg = ServiceConfig()
        cfg.hf_cache_dir = "/models/hf"

        primary, secondary = SegformerBackend().default_configs(cfg)

        assert primary.checkpoint == cfg.primary_checkpoint
        assert primary.input_size == cfg.primary_input_size
        assert primary.precision == "float16"
        assert primary.force_cpu is False
        assert secondary.input_size == cfg.secondary_input_size
        assert secondary.precision == "float32"
        assert secondary.force_cpu is True
        assert primary.cache_dir == secondary.cache_dir == "/models/hf"

    def test_load_passes_cache_dir_and_input_size(self, cpu_only, stub_transformers):
        cfg = ServiceConfig()
        cfg.hf_cache_dir = "/models/hf"
        primary, _ = SegformerBackend().default_configs(cfg)

        segmenter = SegformerBackend().load(primary)

        (processor_checkpoint, processor_kwargs), = StubProcessor.pretrained_calls
        (model_checkpoint, model_kwargs), = StubModel.pretrained_calls
        assert processor_checkpoint == model_checkpoint == cfg.primary_checkpoint
        assert processor_kwargs["cache_dir"] == "/models/hf"
        assert processor_kwargs["size"] == {"height": cfg.primary_input_size, "width": cfg.primary_input_size}
        assert model_kwargs["cache_dir"] == "/models/hf"
        # float16 is only used on CUDA
        assert model_kwargs["torch_dtype"] is torch.float32
        assert segmenter.device == "cpu"
        assert segmenter.model.device == "cpu"

    def test_forced_cpu_config_ignores_accelerator(self, monkeypatch, cpu_only, stub_transformers):
        monkeypatch.setattr(torch.cuda, "is_available", lambda: True)
        backend = SegformerBackend()
        backend.initialize()

        segmenter = backend.load(ModelConfig("conservative", "stub/segformer", 384, force_cpu=True))

        assert backend.device == "cuda"
        assert segmenter.device == "cpu"
        assert StubModel.pretrained_calls[0][1]["cache_dir"] is None


class TestRembg:
    @pytest.fixture
    def rembg(self):
        return pytest.importorskip("rembg")

    def test_mask_is_resized_to_buffer(self, monkeypatch, rembg):
        calls = []

        def fake_remove(image, session, only_mask):
            calls.append((image.size, session, only_mask))
            mask = Image.new("L", (4, 2), 0)
            mask.paste(255, (0, 0, 2, 2))
            return mask

        monkeypatch.setattr(rembg, "remove", fake_remove)
        segmenter = RembgSegmenter(ModelConfig("rembg-test", "u2netp"), "cpu", session="session")

        mask = segmenter.segment(make_pixels(12, 6))

        assert calls == [((12, 6), "session", True)]
        assert mask.confidence.shape == (6, 12)
        assert mask.confidence[3, 0] == pytest.approx(1.0)
        assert mask.confidence[3, -1] == pytest.approx(0.0)

    def test_initialize_reads_onnx_providers(self, monkeypatch):
        import onnxruntime

        monkeypatch.setattr(onnxruntime, "get_available_providers", lambda: ["CPUExecutionProvider"])
        assert RembgBackend().initialize() == "cpu"

        monkeypatch.setattr(
            onnxruntime, "get_available_providers", lambda: ["CUDAExecutionProvider", "CPUExecutionProvider"]
        )
        assert RembgBackend().initialize() == "cuda"

    def test_forced_cpu_session_uses_cpu_provider(self, monkeypatch, rembg):
        sessions = []
        monkeypatch.setattr(rembg, "new_session", lambda name, **kwargs: sessions.append((name, kwargs)) or name)
        backend = RembgBackend()
        backend.device = "cuda"
        _, secondary = backend.default_configs(ServiceConfig())

        segmenter = backend.load(secondary)

        assert sessions == [("u2netp", {"providers": ["CPUExecutionProvider"]})]
        assert segmenter.device == "cpu"
        assert segmenter.session == "u2netp"


class TestGetBackend:
    def test_known_names(self):
        assert isinstance(get_backend("segformer"), SegformerBackend)
        assert isinstance(get_backend("REMBG"), RembgBackend)

    def test_unknown_name_raises(self):
        with pytest.raises(ValueError, match="nope"):
            get_backend("nope")
