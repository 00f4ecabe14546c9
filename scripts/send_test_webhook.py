"""Sign a JSON payload the way a provider would and post it to the webhook endpoint.

Useful against a local stack to exercise signature checks and reconciliation
without the provider's dashboard.
"""

import argparse
import base64
import hashlib
import hmac
import json
import time
import uuid
import zlib

import httpx


def signed_headers(provider: str, body: bytes, secret: str, notification_url: str, webhook_id: str) -> dict:
    if provider == "stripe":
        timestamp = str(int(time.time()))
        digest = hmac.new(secret.encode(), timestamp.encode() + b"." + body, hashlib.sha256).hexdigest()
        return {"Stripe-Signature": f"t={timestamp},v1={digest}"}
    if provider == "paypal":
        transmission_id = str(uuid.uuid4())
        transmission_time = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        message = f"{transmission_id}|{transmission_time}|{webhook_id}|{zlib.crc32(body)}".encode()
        signature = base64.b64encode(hmac.new(secret.encode(), message, hashlib.sha256).digest()).decode()
        return {
            "PAYPAL-TRANSMISSION-ID": transmission_id,
            "PAYPAL-TRANSMISSION-TIME": transmission_time,
            "PAYPAL-TRANSMISSION-SIG": signature,
        }
    if provider == "square":
        digest = hmac.new(secret.encode(), notification_url.encode() + body, hashlib.sha256).digest()
        return {"x-square-hmacsha256-signature": base64.b64encode(digest).decode()}
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return {f"x-{provider}-signature": digest}


def main() -> None:
    parser = argparse.ArgumentParser(description="Post a signed provider webhook.")
    parser.add_argument("provider", choices=["stripe", "paypal", "square", "paypay", "fincode"])
    parser.add_argument("payload", help="path to a JSON file with the provider event")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--notification-url", default="", help="square: URL registered with Square")
    parser.add_argument("--webhook-id", default="", help="paypal: webhook id")
    args = parser.parse_args()

    with open(args.payload, "rb") as fh:
        body = json.dumps(json.load(fh)).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    headers.update(signed_headers(args.provider, body, args.secret, args.notification_url, args.webhook_id))
    resp = httpx.post(f"{args.base_url}/webhooks/{args.provider}", content=body, headers=headers, timeout=10.0)
    print(resp.status_code, resp.text)


if __name__ == "__main__":
    main()
