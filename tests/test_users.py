import pytest

from errors import UsernameTakenError
from users import UserRegistry, validate_username


def test_username_uniqueness_is_case_insensitive(registry):
    alice = registry.add_user("c1", "Alice")
    assert alice.username == "Alice"
    assert alice.connection_id == "c1"

    with pytest.raises(UsernameTakenError):
        registry.add_user("c2", "alice")

    bob = registry.add_user("c2", "Bob")
    assert bob.username == "Bob"
    assert registry.get_usernames() == ["Alice", "Bob"]


def test_remove_user_releases_the_name(registry):
    registry.add_user("c1", "Alice")
    removed = registry.remove_user("c1")

    assert removed.username == "Alice"
    assert registry.get_user("c1") is None
    assert registry.remove_user("c1") is None
    assert registry.add_user("c2", "ALICE").username == "ALICE"


def test_get_user(registry):
    assert registry.get_user("c1") is None
    user = registry.add_user("c1", "carol")
    assert registry.get_user("c1") == user


def test_user_serializes_with_camel_case_keys(registry):
    user = registry.add_user("c1", "carol")
    data = user.model_dump(by_alias=True)
    assert set(data) == {"id", "username", "connectionId", "joinedAt"}
    assert data["connectionId"] == "c1"


def test_close_forgets_everyone(registry):
    registry.add_user("c1", "carol")
    registry.close()
    assert len(registry) == 0
    assert registry.get_usernames() == []


@pytest.mark.parametrize(
    "username",
    ["carol", "Jo_Ann-99", "a  b", "José", "名前です", "x" * 20, "abc"],
)
def test_valid_usernames(username):
    result = validate_username(username)
    assert result.is_valid, result.errors


PATTERN_ERROR = "Username can contain letters, numbers, spaces, underscore, and dash"


@pytest.mark.parametrize(
    "username, errors",
    [
        (None, ["Username is required"]),
        ("", ["Username is required"]),
        ("ab", ["Username too short (min 3 characters)"]),
        ("x" * 21, ["Username too long (max 20 characters)"]),
        ("bad!name", [PATTERN_ERROR]),
        ("   ", ["Username is required", PATTERN_ERROR]),
        ("a!", ["Username too short (min 3 characters)", PATTERN_ERROR]),
    ],
)
def test_invalid_usernames(username, errors):
    result = validate_username(username)
    assert not result.is_valid
    assert result.errors == errors
