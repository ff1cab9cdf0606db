import asyncio

from stickershop.mailer import Mailer, render_magic_link_email, render_order_notification


def test_send_without_api_key_is_skipped():
    assert asyncio.run(Mailer("", "shop@example.com").send("a@example.com", "Hi", "<p>x</p>")) is False


def test_send_without_recipient_is_skipped():
    assert asyncio.run(Mailer("re_test", "shop@example.com").send("", "Hi", "<p>x</p>")) is False


def test_provider_failure_is_reported_not_raised(monkeypatch):
    mailer = Mailer("re_test", "shop@example.com")

    def boom(params):
        raise RuntimeError("provider down")

    monkeypatch.setattr(mailer, "_send_sync", boom)
    assert asyncio.run(mailer.send("a@example.com", "Hi", "<p>x</p>")) is False


def test_successful_send(monkeypatch):
    mailer = Mailer("re_test", "shop@example.com")
    sent = []
    monkeypatch.setattr(mailer, "_send_sync", sent.append)

    assert asyncio.run(mailer.send("a@example.com", "Hi", "  <p>x</p>  ")) is True
    assert sent == [{"from": "shop@example.com", "to": ["a@example.com"], "subject": "Hi", "html": "<p>x</p>"}]


def test_magic_link_template():
    html = render_magic_link_email("https://shop.example.com/auth/verify?token=abc", 15)
    assert 'href="https://shop.example.com/auth/verify?token=abc"' in html
    assert "15 minutes" in html


def test_order_notification_escapes_buyer_input():
    html = render_order_notification(
        buyer_name="<script>x</script>",
        buyer_email="b@example.com",
        address={"line1": "1 Main", "city": "Austin", "zip": "78701", "country": "US"},
        artwork_url="https://x/1.webp",
        fulfillment_ok=False,
        fulfillment_detail="fulfillment_rejected: HTTP 400",
    )

    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "78701" in html
    assert "FAILED" in html
    assert "fulfillment_rejected" in html
