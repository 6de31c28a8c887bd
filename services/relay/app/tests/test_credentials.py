import unittest

from services.relay.app.engine.credentials import CredentialValidator, check_operator_login


class CredentialValidatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.validator = CredentialValidator("correct-horse")

    def test_exact_match(self) -> None:
        self.assertTrue(self.validator.validate("correct-horse"))

    def test_rejects_empty_and_missing(self) -> None:
        self.assertFalse(self.validator.validate(""))
        self.assertFalse(self.validator.validate(None))

    def test_rejects_different_length(self) -> None:
        self.assertFalse(self.validator.validate("correct"))
        self.assertFalse(self.validator.validate("correct-horse-battery"))

    def test_rejects_last_character_difference(self) -> None:
        self.assertFalse(self.validator.validate("correct-hors3"))

    def test_rejects_non_string(self) -> None:
        self.assertFalse(self.validator.validate(12345))

    def test_empty_configured_secret_rejects_everything(self) -> None:
        validator = CredentialValidator("")
        self.assertFalse(validator.validate(""))
        self.assertFalse(validator.validate("anything"))


class OperatorLoginTests(unittest.TestCase):
    def test_requires_both_fields(self) -> None:
        kwargs = {"expected_username": "ops", "expected_password": "pw"}
        self.assertTrue(check_operator_login("ops", "pw", **kwargs))
        self.assertFalse(check_operator_login("ops", "nope", **kwargs))
        self.assertFalse(check_operator_login("other", "pw", **kwargs))


if __name__ == "__main__":
    unittest.main()
