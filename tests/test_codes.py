import base64
import re

from flashsale.codes import generate_unique_code


def test_code_decodes_to_sixteen_bytes():
    code = generate_unique_code()
    assert len(base64.urlsafe_b64decode(code)) == 16


def test_code_is_padded_url_safe_base64():
    code = generate_unique_code()
    assert len(code) == 24
    assert code.endswith("==")
    assert re.fullmatch(r"[A-Za-z0-9_-]{22}==", code)


def test_codes_are_distinct():
    codes = {generate_unique_code() for _ in range(200)}
    assert len(codes) == 200


def test_code_round_trips_through_encoding():
    code = generate_unique_code()
    assert base64.urlsafe_b64encode(base64.urlsafe_b64decode(code)).decode() == code