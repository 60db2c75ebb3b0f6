import pytest

from storyline.policy import POLICIES, MultiCall, SingleCallPerTurn, get_policy


def test_single_call_is_capped():
    assert SingleCallPerTurn().max_calls == 1


def test_multi_call_is_uncapped():
    assert MultiCall().max_calls is None


@pytest.mark.parametrize("name,cls", [("single", SingleCallPerTurn), ("multi", MultiCall)])
def test_get_policy(name, cls):
    assert isinstance(get_policy(name), cls)


def test_unknown_policy():
    with pytest.raises(ValueError, match="single"):
        get_policy("parallel")


def test_registry_names():
    assert sorted(POLICIES) == ["multi", "single"]
