"""
OSS client tests

Three-step signed upload, existence probes, pagination and bucket cleanup.
"""

import unittest

from apsflow import MemorySink, NotFoundError, ProvisioningError, UploadError
from apsflow.oss import suggest_bucket_name
from apsflow.settings import OSS_BASE_URL
from apsflow.testing import FakeResponse, make_client
from apsflow.util import deurnify

BUCKET = "dynbucket"
OBJ = f"{OSS_BASE_URL}/buckets/{BUCKET}/objects"
SIGNED_PUT = "https://s3.example.com/upload/run.rvt?sig=abc"


class TestSignedUpload(unittest.TestCase):
    """GET signed URL, PUT bytes, POST completion."""

    def setUp(self):
        self.client, self.session = make_client()
        self.signed = f"{OBJ}/run.rvt/signeds3upload"

    def script_happy_path(self):
        self.session.add("GET", self.signed, FakeResponse(200, {"urls": [SIGNED_PUT], "uploadKey": "up-1"}))
        self.session.add("PUT", SIGNED_PUT, FakeResponse(200))
        self.session.add("POST", self.signed, FakeResponse(200, {
            "bucketKey": BUCKET,
            "objectKey": "run.rvt",
            "objectId": f"urn:adsk.objects:os.object:{BUCKET}/run.rvt",
            "size": 5,
        }))

    def test_upload_returns_object_and_urn(self):
        self.script_happy_path()

        stored = self.client.oss.upload_object(BUCKET, "run.rvt", b"hello")

        self.assertEqual(stored.object_id, f"urn:adsk.objects:os.object:{BUCKET}/run.rvt")
        self.assertEqual(deurnify(stored.urn), stored.object_id)
        self.assertNotIn("=", stored.urn)
        self.assertEqual(stored.size, 5)

    def test_signed_put_carries_no_bearer(self):
        self.script_happy_path()

        self.client.oss.upload_object(BUCKET, "run.rvt", b"hello", content_type="application/octet-stream")

        put = self.session.calls_to("PUT", SIGNED_PUT)[0]
        self.assertNotIn("Authorization", put.headers)
        self.assertEqual(put.headers["Content-Type"], "application/octet-stream")
        self.assertEqual(put.kwargs["data"], b"hello")
        complete = self.session.calls_to("POST", self.signed)[0]
        self.assertEqual(complete.json, {"uploadKey": "up-1"})
        self.assertEqual(complete.headers["Authorization"], "Bearer test-token")

    def test_failed_put_aborts_without_completion(self):
        self.session.add("GET", self.signed, FakeResponse(200, {"urls": [SIGNED_PUT], "uploadKey": "up-1"}))
        self.session.add("PUT", SIGNED_PUT, FakeResponse(403, text="<Error>AccessDenied</Error>"))

        with self.assertRaises(UploadError) as ctx:
            self.client.oss.upload_object(BUCKET, "run.rvt", b"hello")

        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.details, "<Error>AccessDenied</Error>")
        self.assertEqual(self.session.calls_to("POST", self.signed), [])

    def test_failed_signed_url_request(self):
        self.session.add("GET", self.signed, FakeResponse(404, {"reason": "Bucket not found"}))
        with self.assertRaises(UploadError) as ctx:
            self.client.oss.upload_object(BUCKET, "run.rvt", b"x")
        self.assertEqual(ctx.exception.http_status, 404)

    def test_upload_emits_progress(self):
        self.script_happy_path()
        sink = MemorySink()
        self.client.oss.upload_object(BUCKET, "run.rvt", b"hello", sink=sink)
        self.assertIn("run.rvt uploaded successfully.", sink.messages)


class TestObjectQueries(unittest.TestCase):

    def setUp(self):
        self.client, self.session = make_client()

    def test_object_exists_probe(self):
        self.session.add("HEAD", f"{OBJ}/packages.zip", FakeResponse(200, headers={"Content-Length": "10"}))
        self.session.add("HEAD", f"{OBJ}/missing.zip", FakeResponse(404))

        self.assertTrue(self.client.oss.object_exists(BUCKET, "packages.zip"))
        self.assertFalse(self.client.oss.object_exists(BUCKET, "missing.zip"))

    def test_object_size(self):
        self.session.add("HEAD", f"{OBJ}/result.rvt", FakeResponse(200, headers={"Content-Length": "2048"}))
        self.assertEqual(self.client.oss.object_size(BUCKET, "result.rvt"), 2048)

    def test_object_size_missing(self):
        self.session.add("HEAD", f"{OBJ}/result.rvt", FakeResponse(404))
        with self.assertRaises(NotFoundError):
            self.client.oss.object_size(BUCKET, "result.rvt")

    def test_list_objects_follows_pagination(self):
        next_url = f"{OBJ}?startAt=b&limit=100"

        def page(call):
            if call.params.get("limit") == 100:
                return FakeResponse(200, {"items": [{"objectKey": "a"}], "next": next_url})
            return FakeResponse(200, {"items": [{"objectKey": "b"}]})

        self.session.add("GET", OBJ, page)

        items = self.client.oss.list_objects(BUCKET)

        self.assertEqual([i["objectKey"] for i in items], ["a", "b"])
        self.assertEqual(len(self.session.calls_to("GET", OBJ)), 2)

    def test_get_bucket_missing(self):
        self.session.add("GET", f"{OSS_BASE_URL}/buckets/{BUCKET}/details", FakeResponse(404))
        with self.assertRaises(NotFoundError):
            self.client.oss.get_bucket(BUCKET)

    def test_delete_missing_bucket_is_false(self):
        self.session.add("DELETE", f"{OSS_BASE_URL}/buckets/{BUCKET}", FakeResponse(404))
        self.assertFalse(self.client.oss.delete_bucket(BUCKET))


class TestBucketCleanup(unittest.TestCase):
    """Clear objects, delete the bucket, suggest a new name when stuck."""

    def setUp(self):
        self.client, self.session = make_client()
        self.details = f"{OSS_BASE_URL}/buckets/{BUCKET}/details"
        self.session.add("GET", OBJ, FakeResponse(200, {"items": [
            {"objectKey": "run.rvt"}, {"objectKey": "run.json"},
        ]}))
        self.session.add("DELETE", f"{OBJ}/run.rvt", FakeResponse(200))

    def test_clear_reports_failures(self):
        self.session.add("DELETE", f"{OBJ}/run.json", FakeResponse(403, {"reason": "denied"}))

        report = self.client.oss.clear_bucket(BUCKET)

        self.assertEqual(report.deleted, ["run.rvt"])
        self.assertEqual(report.failed, {"run.json": {"reason": "denied"}})

    def test_cleanup_deletes_bucket(self):
        self.session.add("GET", self.details, FakeResponse(200, {"bucketKey": BUCKET}))
        self.session.add("DELETE", f"{OBJ}/run.json", FakeResponse(200))
        self.session.add("DELETE", f"{OSS_BASE_URL}/buckets/{BUCKET}", FakeResponse(200))

        report = self.client.oss.cleanup_bucket(BUCKET, "testclientid1234")

        self.assertTrue(report.bucket_deleted)
        self.assertEqual(report.objects_deleted, 2)
        self.assertIsNone(report.new_bucket_suggested)

    def test_cleanup_suggests_new_bucket_when_delete_fails(self):
        self.session.add("GET", self.details, FakeResponse(200, {"bucketKey": BUCKET}))
        self.session.add("DELETE", f"{OBJ}/run.json", FakeResponse(200))
        self.session.add("DELETE", f"{OSS_BASE_URL}/buckets/{BUCKET}", FakeResponse(409, {"reason": "busy"}))

        report = self.client.oss.cleanup_bucket(BUCKET, "testclientid1234")

        self.assertFalse(report.bucket_deleted)
        self.assertTrue(report.new_bucket_suggested.startswith("dynbucket_testclie_"))
        self.assertEqual(report.action_required, "UPDATE_ENV_FILE")

    def test_cleanup_of_foreign_bucket(self):
        self.session.add("GET", self.details, FakeResponse(403, {"reason": "not owner"}))

        report = self.client.oss.cleanup_bucket(BUCKET, "testclientid1234")

        self.assertTrue(report.exists)
        self.assertEqual(report.objects_deleted, 0)
        self.assertIsNotNone(report.new_bucket_suggested)

    def test_cleanup_of_missing_bucket(self):
        self.session.add("GET", self.details, FakeResponse(404))
        report = self.client.oss.cleanup_bucket(BUCKET, "testclientid1234")
        self.assertFalse(report.exists)

    def test_suggested_name_format(self):
        self.assertEqual(suggest_bucket_name("My_Bucket", "ABCDEFGHIJ", now_ms=1700000000000),
                         "my_bucket_abcdefgh_1700000000000")

    def test_provisioning_errors_propagate(self):
        self.session.add("GET", self.details, FakeResponse(500, text="oops"))
        with self.assertRaises(ProvisioningError):
            self.client.oss.cleanup_bucket(BUCKET, "testclientid1234")


if __name__ == "__main__":
    unittest.main(verbosity=2)
