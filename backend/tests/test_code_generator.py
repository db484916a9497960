import re

from app.services import code_generator


def test_generate_prefix_and_length() -> None:
    code = code_generator.generate("VIP-", 8)
    assert code.startswith("VIP-")
    assert len(code) == 12
    assert re.fullmatch(r"VIP-[A-Za-z0-9]{8}", code)


def test_generate_without_prefix() -> None:
    code = code_generator.generate("", 10)
    assert re.fullmatch(r"[A-Za-z0-9]{10}", code)


def test_generate_zero_length_returns_prefix() -> None:
    assert code_generator.generate("STATIC", 0) == "STATIC"


def test_generate_negative_length_is_clamped() -> None:
    assert code_generator.generate("X", -3) == "X"


def test_generate_is_not_constant() -> None:
    codes = {code_generator.generate("", 12) for _ in range(50)}
    assert len(codes) == 50
