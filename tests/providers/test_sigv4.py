import unittest
from datetime import UTC, datetime

from coding_agent_loop.providers.sigv4 import (
    AwsCredentials,
    canonical_query,
    canonical_uri,
    sha256_hex,
    sign_request,
    signing_key,
)

_EXAMPLE = AwsCredentials(access_key_id="AKIDEXAMPLE", secret_access_key="wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY")


class SigV4Tests(unittest.TestCase):
    def test_signing_key_matches_published_example(self) -> None:
        key = signing_key("wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY", "20120215", "us-east-1", "iam")

        self.assertEqual("f4780e2d9f65fa895f9c67b32ce1baf0b0d8a43505a000a1a9e090d414db404d", key.hex())

    def test_get_vanilla_signature(self) -> None:
        headers = sign_request(
            method="GET",
            host="example.amazonaws.com",
            path="/",
            payload_hash=sha256_hex(b""),
            region="us-east-1",
            service="service",
            credentials=_EXAMPLE,
            timestamp=datetime(2015, 8, 30, 12, 36, 0, tzinfo=UTC),
        )

        self.assertEqual("20150830T123600Z", headers["x-amz-date"])
        self.assertNotIn("x-amz-security-token", headers)
        self.assertEqual(
            "AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20150830/us-east-1/service/aws4_request, "
            "SignedHeaders=host;x-amz-date, "
            "Signature=5fa00fa31553b73ebf1942676e86291e8372ff2a2260956d9b8aae1d763fbf31",
            headers["authorization"],
        )

    def test_session_token_is_added_and_signed(self) -> None:
        credentials = AwsCredentials("AKID", "secret", session_token="tok")

        headers = sign_request(
            method="POST",
            host="bedrock-runtime.us-east-1.amazonaws.com",
            path="/model/x/invoke",
            headers={"Content-Type": "application/json"},
            payload_hash=sha256_hex(b"{}"),
            region="us-east-1",
            service="bedrock",
            credentials=credentials,
        )

        self.assertEqual("tok", headers["x-amz-security-token"])
        self.assertIn("SignedHeaders=content-type;host;x-amz-date;x-amz-security-token,", headers["authorization"])

    def test_canonical_uri_encodes_escaped_path_again(self) -> None:
        self.assertEqual("/model/a%253A0/invoke", canonical_uri("/model/a%3A0/invoke"))
        self.assertEqual("/", canonical_uri(""))

    def test_canonical_query_sorts_and_encodes(self) -> None:
        self.assertEqual("a=1&b=x%20y", canonical_query("b=x y&a=1"))


if __name__ == "__main__":
    unittest.main()
