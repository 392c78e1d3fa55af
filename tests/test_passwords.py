import pytest

from tokengate.service.passwords import PasswordHasher


@pytest.fixture(scope="module")
def hasher():
    return PasswordHasher()


def test_hash_is_salted_argon2id(hasher):
    first = hasher.hash_password("Correct-Horse-9")
    second = hasher.hash_password("Correct-Horse-9")

    assert first.startswith("$argon2id$")
    assert first != second
    assert "Correct-Horse-9" not in first


def test_verify_accepts_matching_password(hasher):
    stored = hasher.hash_password("Correct-Horse-9")

    assert hasher.verify_password(stored, "Correct-Horse-9") is True


def test_verify_rejects_wrong_password(hasher):
    stored = hasher.hash_password("Correct-Horse-9")

    assert hasher.verify_password(stored, "correct-horse-9") is False


@pytest.mark.parametrize("stored", [None, "", "not-a-hash"])
def test_verify_never_raises_for_missing_or_garbage_hash(hasher, stored):
    assert hasher.verify_password(stored, "Correct-Horse-9") is False


@pytest.mark.parametrize(
    "password,violation",
    [
        ("Ab1!", "too_short"),
        ("Ab1!" + "x" * 200, "too_long"),
        ("Abcdefg!", "requires_digit"),
        ("ABCDEFG1!", "requires_lowercase"),
        ("abcdefg1!", "requires_uppercase"),
        ("Abcdefg12", "requires_non_alphanumeric"),
    ],
)
def test_policy_reports_each_violated_rule(password, violation):
    assert violation in PasswordHasher.check_policy(password)


def test_policy_accepts_strong_password():
    assert PasswordHasher.check_policy("Correct-Horse-9") == []


def test_policy_reports_all_rules_for_empty_password():
    assert set(PasswordHasher.check_policy("")) == {
        "too_short",
        "requires_digit",
        "requires_lowercase",
        "requires_uppercase",
        "requires_non_alphanumeric",
    }
