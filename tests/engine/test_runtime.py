import pytest

torch = pytest.importorskip("torch", reason="torch not installed")

from infersession.runtime import (  # noqa: E402
    check_backend_required,
    is_torch_available,
    resolve_device,
    resolve_dtype,
)


def test_torch_detected():
    assert is_torch_available()


def test_resolve_device():
    assert resolve_device("cpu") == "cpu"
    assert resolve_device("auto") in ("cuda", "mps", "cpu")


def test_resolve_dtype():
    assert resolve_dtype("float32") is torch.float32
    assert resolve_dtype("bfloat16") is torch.bfloat16
    with pytest.raises(ValueError):
        resolve_dtype("int8")


def test_backend_requirements_met():
    pytest.importorskip("transformers", reason="transformers not installed")
    check_backend_required()
