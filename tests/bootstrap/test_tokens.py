import re
import threading

import pytest

import kadm.bootstrap.tokens
import kadm.errors


class TestGenerateToken:
    def test_canonical_form(self):
        token = kadm.bootstrap.tokens.generate_token()
        assert re.fullmatch(r"[0-9a-f]{6}\.[0-9a-f]{16}", token.combined)
        assert str(token) == token.combined

    def test_generated_token_validates(self):
        token = kadm.bootstrap.tokens.generate_token()
        assert kadm.bootstrap.tokens.validate_token(token.combined) == token

    def test_concurrent_generation_is_unique(self):
        tokens = []
        lock = threading.Lock()

        def worker():
            for _ in range(50):
                t = kadm.bootstrap.tokens.generate_token()
                with lock:
                    tokens.append(t.combined)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(tokens) == 400
        assert len(set(tokens)) == 400

    def test_repr_hides_secret(self):
        token = kadm.bootstrap.tokens.validate_token("a1b2c3.0011223344556677")
        assert "0011223344556677" not in repr(token)
        assert "a1b2c3" in repr(token)


class TestValidateToken:
    def test_example_token(self):
        token = kadm.bootstrap.tokens.validate_token("a1b2c3.0011223344556677")
        assert token.token_id == "a1b2c3"
        assert token.secret == bytes.fromhex("0011223344556677")
        assert token.combined == "a1b2c3.0011223344556677"

    def test_bearer_token_is_combined_form(self):
        token = kadm.bootstrap.tokens.validate_token("a1b2c3.0011223344556677")
        assert token.bearer_token == "a1b2c3.0011223344556677"

    def test_uppercase_is_accepted(self):
        token = kadm.bootstrap.tokens.validate_token("A1B2C3.00112233445566AA")
        assert token.combined == "a1b2c3.00112233445566aa"

    def test_idempotent(self):
        first = kadm.bootstrap.tokens.validate_token("a1b2c3.0011223344556677")
        second = kadm.bootstrap.tokens.validate_token(first.combined)
        assert first == second

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "a1b2c3",
            "a1b2c3.",
            ".0011223344556677",
            "a1b2c3.0011.2233",
            "a1b2c.0011223344556677",
            "a1b2c3d.0011223344556677",
            "g1b2c3.0011223344556677",
            "a1b2c3.00112233445566",
            "a1b2c3.001122334455667788",
            "a1b2c3.zz11223344556677",
            " a1b2c3.0011223344556677",
            "a1b2c3.0011223344556677\n",
        ],
    )
    def test_invalid_tokens(self, raw):
        with pytest.raises(kadm.errors.ConfigurationError):
            kadm.bootstrap.tokens.validate_token(raw)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            kadm.bootstrap.tokens.validate_token("nope")
