from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from ig_feed.config import load_config, resolve_admin_token, resolve_runtime_secrets
from ig_feed.errors import ConfigError


_VALID_YAML = """\
graph:
  api_version: /v24.0/
  timeout_seconds: 5
  business_account_id_env: IG_BUSINESS_ACCOUNT_ID
  access_token_env: IG_ACCESS_TOKEN
  token_storage_env: IG_TOKEN_STORAGE

storage:
  cache_dir: var/cache
  snapshot_dir: var/data
  ratelimit_dir: var/ratelimit
  scheduler_dir: var/cache

cache:
  ttl_seconds: 600

rate_limit:
  enabled: true
  group: instagram
  window_seconds: 60
  max_requests: 30
  trust_proxy: true

crawl:
  per_page: 25
  max_pages: 40

schedule:
  refresh_window_seconds: 7200

access:
  admin_token_env: ADMIN_TOKEN
  whitelisted_ips:
    - 127.0.0.1
    - " ::1 "

logging:
  path: var/log/ig_feed.jsonl
  level: DEBUG
"""


class TestConfig(unittest.TestCase):
    def test_load_config_ok(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.yaml"
            path.write_text(_VALID_YAML, encoding="utf-8")

            cfg = load_config(path)
            self.assertEqual(cfg.graph.api_version, "v24.0")
            self.assertEqual(cfg.cache.ttl_seconds, 600)
            self.assertEqual(cfg.rate_limit.max_requests, 30)
            self.assertTrue(cfg.rate_limit.trust_proxy)
            self.assertEqual(cfg.crawl.per_page, 25)
            self.assertEqual(cfg.access.whitelisted_ips, ["127.0.0.1", "::1"])
            self.assertEqual(cfg.logging.level, "DEBUG")

    def test_defaults_without_path(self) -> None:
        cfg = load_config(None)
        self.assertEqual(cfg.crawl.per_page, 3)
        self.assertEqual(cfg.crawl.max_pages, 500)
        self.assertEqual(cfg.cache.ttl_seconds, 86400)
        self.assertEqual(cfg.rate_limit.group, "instagram")
        self.assertEqual(cfg.schedule.refresh_window_seconds, 3600)

    def test_empty_file_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.yaml"
            path.write_text("", encoding="utf-8")
            self.assertEqual(load_config(path), load_config(None))

    def test_rejects_out_of_range_values(self) -> None:
        for old, new in (
            ("per_page: 25", "per_page: 51"),
            ("refresh_window_seconds: 7200", "refresh_window_seconds: 10"),
            ("- 127.0.0.1", "- not-an-ip"),
            ("admin_token_env: ADMIN_TOKEN", "admin_token_env: 'BAD NAME'"),
        ):
            with tempfile.TemporaryDirectory() as td:
                path = Path(td) / "config.yaml"
                path.write_text(_VALID_YAML.replace(old, new), encoding="utf-8")
                with self.assertRaises(ConfigError, msg=new):
                    load_config(path)

    def test_rejects_unknown_keys(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.yaml"
            path.write_text("cache:\n  ttl: 5\n", encoding="utf-8")
            with self.assertRaises(ConfigError) as ctx:
                load_config(path)
            self.assertIn("cache.ttl", str(ctx.exception))

    def test_missing_file_and_bad_yaml(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigError):
                load_config(Path(td) / "missing.yaml")

            path = Path(td) / "bad.yaml"
            path.write_text("graph: [unclosed", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(path)

            path.write_text("- just\n- a list\n", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(path)


class TestRuntimeSecrets(unittest.TestCase):
    def test_requires_env(self) -> None:
        cfg = load_config(None)

        with self.assertRaises(ConfigError) as ctx:
            resolve_runtime_secrets(cfg, environ={})
        self.assertIn("IG_BUSINESS_ACCOUNT_ID", str(ctx.exception))
        self.assertIn("IG_ACCESS_TOKEN", str(ctx.exception))

        secrets = resolve_runtime_secrets(
            cfg, environ={"IG_BUSINESS_ACCOUNT_ID": " 123 ", "IG_ACCESS_TOKEN": "tok"}
        )
        self.assertEqual(secrets.business_account_id, "123")
        self.assertEqual(secrets.access_token, "tok")

    def test_names_only_the_missing_variable(self) -> None:
        cfg = load_config(None)

        with self.assertRaises(ConfigError) as ctx:
            resolve_runtime_secrets(cfg, environ={"IG_BUSINESS_ACCOUNT_ID": "123", "IG_ACCESS_TOKEN": "  "})
        self.assertIn("IG_ACCESS_TOKEN", str(ctx.exception))
        self.assertNotIn("IG_BUSINESS_ACCOUNT_ID", str(ctx.exception))

        with self.assertRaises(ConfigError) as ctx:
            resolve_runtime_secrets(cfg, environ={"IG_ACCESS_TOKEN": "tok"})
        self.assertIn("IG_BUSINESS_ACCOUNT_ID", str(ctx.exception))
        self.assertNotIn("IG_ACCESS_TOKEN", str(ctx.exception))

    def test_token_file_takes_precedence(self) -> None:
        cfg = load_config(None)
        with tempfile.TemporaryDirectory() as td:
            token_file = Path(td) / "token.txt"
            token_file.write_text("  from-file\n", encoding="utf-8")

            secrets = resolve_runtime_secrets(
                cfg,
                environ={
                    "IG_BUSINESS_ACCOUNT_ID": "1",
                    "IG_ACCESS_TOKEN": "from-env",
                    "IG_TOKEN_STORAGE": str(token_file),
                },
            )
            self.assertEqual(secrets.access_token, "from-file")

            token_file.write_text("   ", encoding="utf-8")
            secrets = resolve_runtime_secrets(
                cfg,
                environ={
                    "IG_BUSINESS_ACCOUNT_ID": "1",
                    "IG_ACCESS_TOKEN": "from-env",
                    "IG_TOKEN_STORAGE": str(token_file),
                },
            )
            self.assertEqual(secrets.access_token, "from-env")

    def test_admin_token(self) -> None:
        cfg = load_config(None)
        self.assertIsNone(resolve_admin_token(cfg, environ={}))
        self.assertIsNone(resolve_admin_token(cfg, environ={"ADMIN_TOKEN": "  "}))
        self.assertEqual(resolve_admin_token(cfg, environ={"ADMIN_TOKEN": "s3cret"}), "s3cret")


if __name__ == "__main__":
    unittest.main()
