import io
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from support import FakeRegistry

from sitehost.errors import (
    FileExists,
    FileNotFound,
    FileTooLarge,
    InvalidRequest,
    PathRejected,
    QuotaExceeded,
    RateLimited,
    SiteNotFound,
    StorageIOFailed,
)
from sitehost.pipeline import RESERVED_NAME_REASON, AdmissionPipeline, measure_stream
from sitehost.quota import QuotaLedger
from sitehost.rate_limit import SlidingWindowRateLimiter

TEMP_SUFFIX = ".sitehost-tmp"


class UnseekableStream:
    def __init__(self, data: bytes) -> None:
        self._buffer = io.BytesIO(data)

    def read(self, size=-1):
        return self._buffer.read(size)


class AdmissionPipelineTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.site_root = Path(os.path.abspath(self.tmp.name)) / "blog"
        self.site_root.mkdir()
        self.registry = FakeRegistry()
        self.registry.add("blog", quota_bytes=100, path=str(self.site_root))
        self.ledger = QuotaLedger(self.registry)
        self.limiter = SlidingWindowRateLimiter(max_requests=2, window_ms=60_000)
        self.pipeline = AdmissionPipeline(
            self.registry,
            self.ledger,
            self.limiter,
            max_file_bytes=60,
            domain="example.test",
            chunk_size=8,
            temp_suffix=TEMP_SUFFIX,
        )

    def tearDown(self):
        self.tmp.cleanup()

    def used(self):
        return self.registry.get_site("blog")["used_bytes"]

    def leftovers(self):
        return [path for path in self.site_root.rglob("*") if path.name.endswith(TEMP_SUFFIX)]

    def test_upload_writes_file_and_charges_quota(self):
        result = self.pipeline.upload("blog", "", "index.html", io.BytesIO(b"<h1>hi</h1>"))
        self.assertEqual(result["path"], "index.html")
        self.assertEqual(result["size"], 11)
        self.assertEqual(result["url"], "https://blog.example.test/index.html")
        self.assertEqual(result["used_bytes"], 11)
        self.assertEqual((self.site_root / "index.html").read_bytes(), b"<h1>hi</h1>")
        self.assertEqual(self.used(), 11)
        self.assertEqual(self.leftovers(), [])

    def test_upload_into_sub_path(self):
        result = self.pipeline.upload("blog", "assets/css", "site.css", io.BytesIO(b"body{}"))
        self.assertEqual(result["path"], "assets/css/site.css")
        self.assertTrue((self.site_root / "assets" / "css" / "site.css").is_file())

    def test_traversal_is_rejected_before_any_write(self):
        for sub_path, filename in [("../..", "evil.txt"), ("", "../evil.txt"), ("/etc", "passwd")]:
            with self.assertRaises(PathRejected):
                self.pipeline.upload("blog", sub_path, filename, io.BytesIO(b"x"))
        self.assertFalse((self.site_root.parent / "evil.txt").exists())
        self.assertEqual(self.used(), 0)
        self.assertEqual(self.ledger.usage("blog")["pending_bytes"], 0)

    def test_staging_suffix_is_reserved(self):
        for sub_path, filename in [("", f"backup{TEMP_SUFFIX}"), (f"dir{TEMP_SUFFIX}", "a.txt")]:
            with self.assertRaises(PathRejected) as ctx:
                self.pipeline.upload("blog", sub_path, filename, io.BytesIO(b"x" * 40))
            self.assertEqual(ctx.exception.reason, RESERVED_NAME_REASON)
        self.assertEqual(list(self.site_root.iterdir()), [])
        self.assertEqual(self.used(), 0)
        self.assertEqual(self.ledger.usage("blog")["pending_bytes"], 0)

        (self.site_root / f".a.txt.1{TEMP_SUFFIX}").write_bytes(b"partial")
        with self.assertRaises(PathRejected):
            self.pipeline.delete("blog", f".a.txt.1{TEMP_SUFFIX}")
        self.assertTrue((self.site_root / f".a.txt.1{TEMP_SUFFIX}").exists())

    def test_missing_filename(self):
        with self.assertRaises(InvalidRequest):
            self.pipeline.upload("blog", "", "  ", io.BytesIO(b"x"))

    def test_unknown_site(self):
        with self.assertRaises(SiteNotFound):
            self.pipeline.upload("nope", "", "a.txt", io.BytesIO(b"x"))

    def test_existing_file_requires_overwrite(self):
        self.pipeline.upload("blog", "", "a.txt", io.BytesIO(b"12345"))
        with self.assertRaises(FileExists):
            self.pipeline.upload("blog", "", "a.txt", io.BytesIO(b"678"))
        self.assertEqual((self.site_root / "a.txt").read_bytes(), b"12345")

    def test_overwrite_charges_only_the_difference(self):
        self.pipeline.upload("blog", "", "a.txt", io.BytesIO(b"x" * 50))
        self.pipeline.upload("blog", "", "b.txt", io.BytesIO(b"y" * 40))
        self.assertEqual(self.used(), 90)
        # 55 new bytes fit because 50 of them replace the old file.
        result = self.pipeline.upload("blog", "", "a.txt", io.BytesIO(b"z" * 55), overwrite=True)
        self.assertEqual(result["used_bytes"], 95)
        self.assertEqual(self.used(), 95)

    def test_file_too_large(self):
        with self.assertRaises(FileTooLarge):
            self.pipeline.upload("blog", "", "big.bin", io.BytesIO(b"x" * 61))
        self.assertFalse((self.site_root / "big.bin").exists())

    def test_quota_exceeded_reports_usage(self):
        self.registry.set_used_bytes("blog", 90)
        with self.assertRaises(QuotaExceeded) as ctx:
            self.pipeline.upload("blog", "", "a.txt", io.BytesIO(b"x" * 20))
        self.assertEqual(
            ctx.exception.to_payload(),
            {
                "error": "Storage quota exceeded",
                "used_bytes": 90,
                "quota_bytes": 100,
                "requested_bytes": 20,
            },
        )
        self.assertFalse((self.site_root / "a.txt").exists())

    def test_failed_write_rolls_back_reservation(self):
        with mock.patch("sitehost.pipeline.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(StorageIOFailed):
                self.pipeline.upload("blog", "deep/dir", "a.txt", io.BytesIO(b"x" * 30))
        self.assertEqual(self.used(), 0)
        self.assertEqual(self.ledger.usage("blog")["pending_bytes"], 0)
        self.assertEqual(self.leftovers(), [])
        self.assertFalse((self.site_root / "deep").exists())

    def test_unseekable_stream_is_measured(self):
        self.assertIsNone(measure_stream(UnseekableStream(b"abc")))
        result = self.pipeline.upload("blog", "", "a.txt", UnseekableStream(b"x" * 20))
        self.assertEqual(result["size"], 20)
        with self.assertRaises(FileTooLarge):
            self.pipeline.upload("blog", "", "b.txt", UnseekableStream(b"x" * 61))

    def test_file_cannot_be_nested_under_a_file(self):
        self.pipeline.upload("blog", "", "a.txt", io.BytesIO(b"x"))
        with self.assertRaises(FileExists):
            self.pipeline.upload("blog", "a.txt", "b.txt", io.BytesIO(b"x"))

    def test_delete_releases_quota_and_prunes_directories(self):
        self.pipeline.upload("blog", "img", "logo.png", io.BytesIO(b"x" * 25))
        result = self.pipeline.delete("blog", "img/logo.png")
        self.assertTrue(result["success"])
        self.assertEqual(result["used_bytes"], 0)
        self.assertFalse((self.site_root / "img").exists())
        self.assertTrue(self.site_root.is_dir())

    def test_delete_missing_file(self):
        with self.assertRaises(FileNotFound):
            self.pipeline.delete("blog", "nope.txt")

    def test_delete_rejects_root_and_traversal(self):
        with self.assertRaises(PathRejected):
            self.pipeline.delete("blog", "")
        with self.assertRaises(PathRejected):
            self.pipeline.delete("blog", "../blog")

    def test_admit_request_raises_with_headers(self):
        self.pipeline.admit_request("ip:10.0.0.1")
        decision = self.pipeline.admit_request("ip:10.0.0.1")
        self.assertEqual(decision.remaining, 0)
        with self.assertRaises(RateLimited) as ctx:
            self.pipeline.admit_request("ip:10.0.0.1")
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(ctx.exception.headers["X-RateLimit-Remaining"], "0")
        self.assertIn("Retry-After", ctx.exception.headers)


if __name__ == "__main__":
    unittest.main()
