from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from pydantic import ValidationError

from supplier_pay.config import Settings


class SettingsTests(unittest.TestCase):
    def test_policy_defaults(self) -> None:
        config = Settings()
        self.assertEqual(config.pending_window_minutes, 15)
        self.assertEqual(config.submit_max_attempts, 2)
        self.assertEqual(config.retry_backoff_ms, 300)

    def test_non_positive_pending_window_is_refused(self) -> None:
        for value in (0, -5):
            with self.assertRaises(ValidationError):
                Settings(pending_window_minutes=value)

    def test_pending_window_from_environment_is_validated(self) -> None:
        with patch.dict(os.environ, {'PENDING_WINDOW_MINUTES': '-1'}):
            with self.assertRaises(ValidationError):
                Settings()
        with patch.dict(os.environ, {'PENDING_WINDOW_MINUTES': '20'}):
            self.assertEqual(Settings().pending_window_minutes, 20)

    def test_submit_policy_bounds(self) -> None:
        with self.assertRaises(ValidationError):
            Settings(submit_max_attempts=0)
        with self.assertRaises(ValidationError):
            Settings(submit_timeout_seconds=0)

    def test_postgres_url_uses_psycopg_driver(self) -> None:
        config = Settings(database_url=' postgres://u:p@db:5432/pay ')
        self.assertEqual(config.database_url_normalized, 'postgresql+psycopg://u:p@db:5432/pay')


if __name__ == '__main__':
    unittest.main()
