"""Tests for TOTP codes and recovery codes."""

import base64
from datetime import timedelta

from sessionward.service import totp

# RFC 6238 appendix B test secret ("12345678901234567890") in base32
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


class TestCodes:
    def test_rfc6238_vectors(self):
        # SHA1 vectors truncated to 6 digits
        assert totp.current_code(RFC_SECRET, 59) == "287082"
        assert totp.current_code(RFC_SECRET, 1111111109) == "081804"
        assert totp.current_code(RFC_SECRET, 1234567890) == "005924"
        assert totp.current_code(RFC_SECRET, 2000000000) == "279037"

    def test_secret_is_base32_and_random(self):
        first = totp.generate_secret()
        second = totp.generate_secret()
        assert first != second
        assert len(first) == 32
        base64.b32decode(first)

    def test_code_is_six_digits(self, clock):
        code = totp.current_code(totp.generate_secret(), clock.now)
        assert len(code) == 6
        assert code.isdigit()

    def test_accepts_datetime_and_float(self, clock):
        secret = totp.generate_secret()
        assert totp.current_code(secret, clock.now) == totp.current_code(
            secret, clock.now.timestamp()
        )


class TestDriftWindow:
    def test_valid_29_seconds_later(self, clock):
        secret = totp.generate_secret()
        code = totp.current_code(secret, clock.now)
        assert totp.verify_code(secret, code, clock.now + timedelta(seconds=29))

    def test_previous_step_still_valid(self, clock):
        secret = totp.generate_secret()
        code = totp.current_code(secret, clock.now)
        assert totp.verify_code(secret, code, clock.now + timedelta(seconds=59))

    def test_next_step_accepted(self, clock):
        secret = totp.generate_secret()
        code = totp.current_code(secret, clock.now + timedelta(seconds=30))
        assert totp.verify_code(secret, code, clock.now)

    def test_rejected_91_seconds_later(self, clock):
        secret = totp.generate_secret()
        code = totp.current_code(secret, clock.now)
        assert not totp.verify_code(secret, code, clock.now + timedelta(seconds=91))

    def test_two_steps_back_rejected(self, clock):
        secret = totp.generate_secret()
        code = totp.current_code(secret, clock.now)
        assert not totp.verify_code(secret, code, clock.now + timedelta(seconds=60))

    def test_window_zero_is_exact(self, clock):
        secret = totp.generate_secret()
        code = totp.current_code(secret, clock.now)
        assert totp.verify_code(secret, code, clock.now + timedelta(seconds=29), window=0)
        assert not totp.verify_code(secret, code, clock.now + timedelta(seconds=30), window=0)

    def test_malformed_input_rejected(self, clock):
        secret = totp.generate_secret()
        assert not totp.verify_code(secret, "", clock.now)
        assert not totp.verify_code(secret, "12345", clock.now)
        assert not totp.verify_code(secret, "abcdef", clock.now)
        assert not totp.verify_code("not base32!", "123456", clock.now)
        # Non-ASCII digits satisfy str.isdigit but are never valid codes
        assert not totp.verify_code(secret, "١٢٣٤٥٦", clock.now)
        assert not totp.verify_code(secret, "１２３４５６", clock.now)

    def test_spaces_are_ignored(self, clock):
        secret = totp.generate_secret()
        code = totp.current_code(secret, clock.now)
        assert totp.verify_code(secret, f"{code[:3]} {code[3:]}", clock.now)


class TestProvisioning:
    def test_uri_shape(self):
        uri = totp.provisioning_uri("JBSWY3DPEHPK3PXP", "alice@example.com", "Sessionward")
        assert uri.startswith("otpauth://totp/Sessionward%3Aalice%40example.com?")
        assert "secret=JBSWY3DPEHPK3PXP" in uri
        assert "issuer=Sessionward" in uri
        assert "period=30" in uri


class TestRecoveryCodes:
    def test_generated_codes_are_distinct_and_typeable(self):
        codes = totp.generate_recovery_codes()
        assert len(codes) == 10
        assert len(set(codes)) == 10
        for code in codes:
            left, right = code.split("-")
            assert len(left) == len(right) == 5
            assert set(left + right) <= set(totp.RECOVERY_ALPHABET)

    def test_consume_removes_code(self):
        codes = totp.generate_recovery_codes(3)
        stored = totp.hash_recovery_codes(codes)

        result = totp.consume_recovery_code(stored, codes[1])
        assert result.ok
        assert len(result.remaining) == 2
        assert totp.hash_recovery_code(codes[1]) not in result.remaining

        again = totp.consume_recovery_code(result.remaining, codes[1])
        assert not again.ok
        assert again.remaining == result.remaining

    def test_consume_is_case_and_hyphen_insensitive(self):
        codes = totp.generate_recovery_codes(1)
        stored = totp.hash_recovery_codes(codes)
        assert totp.consume_recovery_code(stored, codes[0].replace("-", "").lower()).ok

    def test_unknown_or_empty_code(self):
        stored = totp.hash_recovery_codes(totp.generate_recovery_codes(2))
        assert not totp.consume_recovery_code(stored, "AAAAA-AAAAA").ok
        assert not totp.consume_recovery_code(stored, "").ok
        assert not totp.consume_recovery_code([], "AAAAA-AAAAA").ok
