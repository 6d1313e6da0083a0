"""
Provisioning tests

Bucket idempotence, definition versioning on 409 and alias create-or-move.
"""

import unittest

from apsflow import ConfigError, MemorySink, NotFoundError, ProvisioningError
from apsflow.design_automation import ACTIVITIES, APPBUNDLES
from apsflow.provisioning import build_activity_definition
from apsflow.settings import DA_BASE_URL, OSS_BASE_URL
from apsflow.testing import FakeResponse, make_client

BUCKET = "dynbucket"
DETAILS = f"{OSS_BASE_URL}/buckets/{BUCKET}/details"
BUCKETS = f"{OSS_BASE_URL}/buckets"


class TestEnsureBucket(unittest.TestCase):
    """ensure_bucket reports created vs. already there."""

    def setUp(self):
        self.client, self.session = make_client()

    def test_creates_missing_bucket(self):
        self.session.add("GET", DETAILS, FakeResponse(404))
        self.session.add("POST", BUCKETS, FakeResponse(200, {"bucketKey": BUCKET, "policyKey": "transient"}))

        status = self.client.provisioner.ensure_bucket(BUCKET)

        self.assertTrue(status.created)
        self.assertEqual(self.session.calls_to("POST", BUCKETS)[0].json,
                         {"bucketKey": BUCKET, "policyKey": "transient"})

    def test_second_call_reports_existing(self):
        self.session.add("GET", DETAILS, FakeResponse(404), FakeResponse(200, {"bucketKey": BUCKET}))
        self.session.add("POST", BUCKETS, FakeResponse(200, {"bucketKey": BUCKET}))

        first = self.client.provisioner.ensure_bucket(BUCKET)
        second = self.client.provisioner.ensure_bucket(BUCKET)

        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(second.message, f"Bucket '{BUCKET}' already exists")
        self.assertEqual(len(self.session.calls_to("POST", BUCKETS)), 1)

    def test_conflict_on_create_is_success(self):
        self.session.add("GET", DETAILS, FakeResponse(404))
        self.session.add("POST", BUCKETS, FakeResponse(409, {"reason": "Bucket already exists"}))

        status = self.client.provisioner.ensure_bucket(BUCKET)

        self.assertFalse(status.created)

    def test_other_errors_carry_upstream_body(self):
        self.session.add("GET", DETAILS, FakeResponse(404))
        self.session.add("POST", BUCKETS, FakeResponse(400, {"reason": "Invalid bucket key"}))

        with self.assertRaises(ProvisioningError) as ctx:
            self.client.provisioner.ensure_bucket(BUCKET)

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.details, {"reason": "Invalid bucket key"})

    def test_missing_bucket_name(self):
        client, _ = make_client(bucket_name="")
        with self.assertRaises(ConfigError):
            client.provisioner.ensure_bucket()


class TestActivityProvisioning(unittest.TestCase):
    """New activity versions and alias moves."""

    def setUp(self):
        self.client, self.session = make_client()
        self.create = f"{DA_BASE_URL}/activities"
        self.versions = f"{DA_BASE_URL}/activities/DynamoActivity/versions"
        self.aliases = f"{DA_BASE_URL}/activities/DynamoActivity/aliases"
        self.alias = f"{self.aliases}/default"

    def test_first_provision_creates_activity_and_alias(self):
        self.session.add("POST", self.create, FakeResponse(200, {"id": "dynnick.DynamoActivity", "version": 1}))
        self.session.add("POST", self.aliases, FakeResponse(200, {"id": "default", "version": 1}))

        result = self.client.provisioner.provision_activity()

        self.assertEqual(result.version, 1)
        self.assertTrue(result.alias_created)
        self.assertTrue(result.new_resource)
        self.assertEqual(result.qualified_id, "dynnick.DynamoActivity+default")
        self.assertEqual(self.session.calls_to("POST", self.aliases)[0].json, {"id": "default", "version": 1})

    def test_existing_activity_gets_new_version_and_alias_moves(self):
        self.session.add("POST", self.create, FakeResponse(409, {"diagnostic": "exists"}))
        self.session.add("POST", self.versions, FakeResponse(200, {"version": 4}))
        self.session.add("POST", self.aliases, FakeResponse(409, {"diagnostic": "alias exists"}))
        self.session.add("PATCH", self.alias, FakeResponse(200, {"id": "default", "version": 4}))
        sink = MemorySink()

        result = self.client.provisioner.provision_activity(sink)

        self.assertEqual(result.version, 4)
        self.assertFalse(result.new_resource)
        self.assertFalse(result.alias_created)
        self.assertEqual(self.session.calls_to("PATCH", self.alias)[0].json, {"version": 4})
        self.assertNotIn("id", self.session.calls_to("POST", self.versions)[0].json)
        self.assertIn("Alias exists, updating to version 4...", sink.messages)

    def test_alias_failure_raises(self):
        self.session.add("POST", self.create, FakeResponse(200, {"version": 1}))
        self.session.add("POST", self.aliases, FakeResponse(500, text="server error"))
        with self.assertRaises(ProvisioningError):
            self.client.provisioner.provision_activity()

    def test_activity_definition_shape(self):
        d = build_activity_definition("DynamoActivity", "dynnick", "DynamoBundle", description="x")

        self.assertEqual(d["engine"], "Autodesk.Revit+2026")
        self.assertEqual(d["appbundles"], ["dynnick.DynamoBundle+default"])
        self.assertIn('/al "$(appbundles[DynamoBundle].path)"', d["commandLine"][0])
        params = d["parameters"]
        self.assertEqual(set(params), {"rvtFile", "runRequest", "pythonLibs", "dynResult", "packages", "rvtResult"})
        self.assertTrue(params["rvtFile"]["required"])
        self.assertEqual(params["runRequest"]["localName"], "run.json")
        self.assertEqual(params["pythonLibs"]["localName"], "pythonDependencies")
        self.assertTrue(params["packages"]["zip"])
        self.assertEqual(params["dynResult"]["verb"], "put")
        self.assertEqual(params["rvtResult"]["localName"], "result.rvt")


class TestAppBundleProvisioning(unittest.TestCase):

    def setUp(self):
        self.client, self.session = make_client()
        self.create = f"{DA_BASE_URL}/appbundles"
        self.aliases = f"{DA_BASE_URL}/appbundles/DynamoBundle/aliases"
        self.upload_url = "https://dasprod-store.s3.amazonaws.com"

    def test_bundle_zip_posted_as_form(self):
        self.session.add("POST", self.create, FakeResponse(200, {
            "id": "dynnick.DynamoBundle",
            "version": 2,
            "uploadParameters": {
                "endpointURL": self.upload_url,
                "formData": {"key": "apps/x/DynamoBundle/2", "policy": "p", "x-amz-signature": "s"},
            },
        }))
        self.session.add("POST", self.upload_url, FakeResponse(204))
        self.session.add("POST", self.aliases, FakeResponse(200, {"id": "default", "version": 2}))

        result = self.client.provisioner.provision_appbundle("bundle.zip", b"PK\x03\x04")

        self.assertEqual(result.version, 2)
        upload = self.session.calls_to("POST", self.upload_url)[0]
        self.assertNotIn("Authorization", upload.headers)
        self.assertEqual(upload.kwargs["data"]["key"], "apps/x/DynamoBundle/2")
        self.assertEqual(upload.kwargs["files"]["file"][0], "bundle.zip")
        self.assertEqual(result.qualified_id, "dynnick.DynamoBundle+default")

    def test_missing_upload_parameters(self):
        self.session.add("POST", self.create, FakeResponse(200, {"version": 2}))
        with self.assertRaises(ProvisioningError):
            self.client.provisioner.provision_appbundle("bundle.zip", b"PK")


class TestNicknameAndListing(unittest.TestCase):

    def setUp(self):
        self.client, self.session = make_client()
        self.me = f"{DA_BASE_URL}/forgeapps/me"

    def test_get_nickname(self):
        self.session.add("GET", self.me, FakeResponse(200, "dynnick"))
        self.assertEqual(self.client.da.get_nickname(), "dynnick")

    def test_get_nickname_missing(self):
        self.session.add("GET", self.me, FakeResponse(404))
        with self.assertRaises(NotFoundError):
            self.client.da.get_nickname()

    def test_set_nickname(self):
        self.session.add("PATCH", self.me, FakeResponse(200))
        self.client.da.set_nickname("newnick")
        self.assertEqual(self.session.calls_to("PATCH", self.me)[0].json, {"nickname": "newnick"})

    def test_clear_account_nothing_to_clear(self):
        self.session.add("DELETE", self.me, FakeResponse(404))
        self.assertFalse(self.client.provisioner.clear_account())

    def test_list_owned_strips_prefix(self):
        self.session.add("GET", f"{DA_BASE_URL}/{ACTIVITIES}", FakeResponse(200, {
            "data": ["dynnick.DynamoActivity+default", "Autodesk.Nop+Latest", "dynnick.Other+$LATEST"],
        }))
        self.assertEqual(self.client.provisioner.list_owned(ACTIVITIES),
                         ["DynamoActivity+default", "Other+$LATEST"])

    def test_list_follows_pagination_token(self):
        def pages(call):
            if call.params.get("page") == "p2":
                return FakeResponse(200, {"data": ["dynnick.B+default"]})
            return FakeResponse(200, {"data": ["dynnick.A+default"], "paginationToken": "p2"})

        self.session.add("GET", f"{DA_BASE_URL}/{APPBUNDLES}", pages)
        self.assertEqual(self.client.provisioner.list_owned(APPBUNDLES), ["A+default", "B+default"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
