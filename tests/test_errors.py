import pytest

from swarmsentinel.errors import Cancelled, CycleError, wrap_runtime


def test_cycle_error_message():
    err = CycleError("compose fetch", ValueError("boom"))
    assert str(err) == "compose fetch: boom"
    assert err.op == "compose fetch"


def test_cycle_error_keeps_cause():
    inner = OSError("disk full")
    with pytest.raises(CycleError) as info:
        raise CycleError("state save", inner)
    assert info.value.__cause__ is inner
    assert info.value.err is inner


def test_wrap_runtime_none_is_none():
    assert wrap_runtime("state load", None) is None


def test_wrap_runtime_wraps():
    inner = RuntimeError("timeout")
    wrapped = wrap_runtime("swarm actual state", inner)
    assert isinstance(wrapped, CycleError)
    assert wrapped.op == "swarm actual state"
    assert wrapped.err is inner
    assert str(wrapped) == "swarm actual state: timeout"


def test_cancelled_message():
    with pytest.raises(Cancelled, match="canceled"):
        raise Cancelled()
    assert str(Cancelled("stopped early")) == "stopped early"