import html
import io
import json
import re
from importlib import import_module
from unittest import mock

import httpx
from django.conf import settings
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, override_settings
from django.urls import reverse

from .formatting import format_message
from .gemini import GeminiClient, TECHNICAL_FRAMING, build_payload, frame_prompt
from .store import ASSISTANT, USER, ChatStore, CompletionError, SubmitInProgress, make_title
from .suggestions import SUGGESTIONS, suggestions_for

DATA_CODE_RE = re.compile(r'data-code="([^"]*)"')


def _store(**kwargs):
    ids = iter(range(1000, 2000))
    kwargs.setdefault("clock", lambda: next(ids))
    kwargs.setdefault("today", lambda: "2024-03-21")
    return ChatStore(**kwargs)


def _fails(prompt, simple_mode):
    raise CompletionError("Failed to get response from AI. Please try again.")


class FakeCompletion:
    def __init__(self, reply="ok", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def complete(self, prompt, simple_mode=False):
        self.calls.append((prompt, simple_mode))
        if self.error:
            raise self.error
        return self.reply


class ChatStoreTests(SimpleTestCase):
    def test_submit_appends_user_message_before_completion(self):
        store = _store()
        seen = []

        def complete(prompt, simple_mode):
            seen.append(list(store.messages))
            return "reply"

        store.submit_message("  hello  ", False, complete)
        self.assertEqual(len(seen[0]), 1)
        self.assertEqual(seen[0][0].role, USER)
        self.assertEqual(seen[0][0].content, "hello")
        self.assertEqual([m.role for m in store.messages], [USER, ASSISTANT])
        self.assertEqual(store.messages[1].content, "reply")

    def test_empty_input_is_ignored(self):
        store = _store()
        for text in ("", "   ", "\n\t"):
            self.assertIsNone(store.submit_message(text, False, _fails))
        self.assertEqual(store.messages, [])
        self.assertEqual(store.conversations, [])
        self.assertIsNone(store.active_id)

    def test_first_message_creates_conversation(self):
        store = _store()
        store.submit_message("short", False, lambda p, s: "r")
        self.assertEqual(len(store.conversations), 1)
        conv = store.conversations[0]
        self.assertEqual(conv.title, "short")
        self.assertEqual(conv.date, "2024-03-21")
        self.assertEqual(store.active_id, conv.id)

        store.submit_message("second question", False, lambda p, s: "r")
        self.assertEqual(len(store.conversations), 1)
        self.assertEqual(len(store.messages), 4)

    def test_long_title_is_truncated(self):
        text = "a" * 31
        self.assertEqual(make_title(text), "a" * 30 + "...")
        self.assertEqual(make_title("a" * 30), "a" * 30)
        store = _store()
        store.submit_message(text, False, lambda p, s: "r")
        self.assertEqual(store.conversations[0].title, "a" * 30 + "...")

    def test_new_conversations_go_to_the_front(self):
        store = _store()
        store.submit_message("first", False, lambda p, s: "r")
        store.start_new_chat()
        store.submit_message("second", False, lambda p, s: "r")
        self.assertEqual([c.title for c in store.conversations], ["second", "first"])

    def test_ids_stay_unique_with_a_stuck_clock(self):
        store = _store(clock=lambda: 5)
        store.submit_message("one", False, lambda p, s: "r")
        store.start_new_chat()
        store.submit_message("two", False, lambda p, s: "r")
        self.assertEqual(sorted(c.id for c in store.conversations), [5, 6])

    def test_failure_leaves_no_assistant_message(self):
        store = _store()
        with self.assertLogs("techtutor", level="WARNING"):
            result = store.submit_message("hi", True, _fails)
        self.assertIsNone(result)
        self.assertEqual([m.role for m in store.messages], [USER])
        self.assertIn("Failed", store.error)
        self.assertFalse(store.pending)

    def test_start_new_chat_keeps_conversations(self):
        store = _store()
        store.submit_message("hi", False, lambda p, s: "r")
        store.start_new_chat()
        self.assertIsNone(store.active_id)
        self.assertEqual(store.messages, [])
        self.assertEqual(len(store.conversations), 1)

    def test_delete_active_conversation_resets_transcript(self):
        store = _store()
        store.submit_message("hi", False, lambda p, s: "r")
        conv_id = store.active_id
        store.delete_conversation(conv_id)
        self.assertEqual(store.conversations, [])
        self.assertIsNone(store.active_id)
        self.assertEqual(store.messages, [])

    def test_delete_other_conversation_keeps_transcript(self):
        store = _store()
        store.submit_message("old", False, lambda p, s: "r")
        old_id = store.active_id
        store.start_new_chat()
        store.submit_message("current", False, lambda p, s: "r")
        before = list(store.messages)
        store.delete_conversation(old_id)
        self.assertEqual(store.messages, before)
        self.assertEqual([c.title for c in store.conversations], ["current"])

    def test_delete_unknown_id_is_noop(self):
        store = _store()
        store.submit_message("hi", False, lambda p, s: "r")
        store.delete_conversation(424242)
        self.assertEqual(len(store.conversations), 1)
        self.assertEqual(len(store.messages), 2)

    def test_select_conversation(self):
        store = _store()
        store.submit_message("first", False, lambda p, s: "r")
        first_id = store.active_id
        store.start_new_chat()
        store.submit_message("second", False, lambda p, s: "r")

        store.select_conversation(store.active_id)
        self.assertEqual(len(store.messages), 2)

        store.select_conversation(first_id)
        self.assertEqual(store.active_id, first_id)
        self.assertEqual(store.messages, [])

        with self.assertRaises(KeyError):
            store.select_conversation(1)

    def test_second_submit_while_in_flight_is_rejected(self):
        store = _store()
        store.begin_submit("first")
        with self.assertRaises(SubmitInProgress):
            store.begin_submit("second")
        store.finish_submit("done")
        self.assertIsNotNone(store.begin_submit("second"))

    def test_stale_in_flight_mark_expires(self):
        store = _store(pending_ttl=30)
        store.begin_submit("first")
        store.pending_since -= 60
        with self.assertLogs("techtutor", level="WARNING"):
            self.assertIsNotNone(store.begin_submit("second"))

    def test_dict_round_trip(self):
        store = _store()
        store.submit_message("hi", False, lambda p, s: "there")
        data = json.loads(json.dumps(store.to_dict()))
        again = ChatStore.from_dict(data)
        self.assertEqual(again.conversations, store.conversations)
        self.assertEqual(again.messages, store.messages)
        self.assertEqual(again.active_id, store.active_id)

    def test_from_dict_drops_dangling_active_id(self):
        store = ChatStore.from_dict({"active_id": 7, "messages": [{"role": "user", "content": "x"}]})
        self.assertIsNone(store.active_id)
        self.assertEqual(store.messages, [])


class FormatMessageTests(SimpleTestCase):
    def test_inline_code(self):
        out = format_message("`x`")
        self.assertRegex(out, r"^<code[^>]*>x</code>$")

    def test_bold(self):
        self.assertEqual(format_message("**b**"), '<strong class="font-bold">b</strong>')

    def test_code_block_payload_is_trimmed_code(self):
        out = format_message("```js\ncode\n```")
        payloads = DATA_CODE_RE.findall(out)
        self.assertEqual(payloads, ["code"])
        self.assertIn(">js</span>", out)
        self.assertIn('<code class="text-sm font-mono">code</code>', out)

    def test_code_block_without_language(self):
        out = format_message("```\nprint(1)\n```")
        self.assertIn(">code</span>", out)
        self.assertEqual(DATA_CODE_RE.findall(out), ["print(1)"])

    def test_first_closing_fence_ends_block(self):
        out = format_message("```py\na\n```\nmiddle\n```py\nb\n```")
        self.assertEqual(DATA_CODE_RE.findall(out), ["a", "b"])
        self.assertIn("middle", out)

    def test_payload_survives_attribute_escaping(self):
        code = 'print("<b>" & \'x\')'
        out = format_message(f"```python\n  {code}  \n```")
        self.assertEqual(html.unescape(DATA_CODE_RE.findall(out)[0]), code)

    def test_code_contents_are_not_reformatted(self):
        out = format_message("```\n**not bold**\n* not a bullet\n```")
        self.assertNotIn("<strong", out)
        self.assertNotIn("<li", out)
        out = format_message("use `**kwargs` here")
        self.assertNotIn("<strong", out)
        self.assertIn("**kwargs</code>", out)

    def test_bullets_are_grouped(self):
        out = format_message("Intro\n* one\n* two\nMiddle\n* three")
        self.assertEqual(out.count("<ul"), 2)
        self.assertEqual(out.count("<li"), 3)
        first, second = out.split("Middle")
        self.assertEqual(first.count("<li"), 2)
        self.assertEqual(second.count("<li"), 1)
        self.assertTrue(out.startswith("Intro\n<ul"))

    def test_bullet_with_inline_code_and_closing_li_text(self):
        out = format_message("* run `ls`\n* text with </li> inside")
        self.assertEqual(out.count("<ul"), 1)
        self.assertIn("ls</code>", out)

    def test_raw_html_passes_through_by_default(self):
        self.assertEqual(format_message("<i>hi</i>"), "<i>hi</i>")

    def test_escape_mode(self):
        out = format_message("<script>x</script> **b** `<i>`", escape=True)
        self.assertNotIn("<script>", out)
        self.assertIn("&lt;script&gt;", out)
        self.assertIn("<strong", out)
        self.assertIn("&lt;i&gt;</code>", out)

    def test_empty(self):
        self.assertEqual(format_message(""), "")

    def test_nul_characters_are_dropped(self):
        self.assertEqual(format_message("a\x000\x00b"), "a0b")


class SuggestionTests(SimpleTestCase):
    def test_lookup(self):
        self.assertIn("What is recursion?", suggestions_for("Programming"))
        self.assertEqual(suggestions_for("Nope"), [])
        self.assertEqual(suggestions_for(None), [])
        self.assertEqual(len(SUGGESTIONS), 5)
        for prompts in SUGGESTIONS.values():
            self.assertEqual(len(prompts), 3)


@override_settings(GEMINI_API_KEY="test-key", GEMINI_API_URL="https://gemini.test/generate")
class GeminiClientTests(SimpleTestCase):
    def _client(self, handler):
        return GeminiClient(transport=httpx.MockTransport(handler))

    def test_framing(self):
        self.assertTrue(frame_prompt("x", True).startswith("Please explain this in simple terms"))
        self.assertEqual(frame_prompt("x", False), TECHNICAL_FRAMING.format(prompt="x"))

    def test_payload_shape(self):
        payload = build_payload("x", False)
        self.assertEqual(payload["contents"][0]["parts"][0]["text"], frame_prompt("x", False))
        self.assertEqual(payload["generationConfig"]["maxOutputTokens"], 1024)
        self.assertEqual(len(payload["safetySettings"]), 4)

    def test_complete_returns_candidate_text(self):
        seen = {}

        def handler(request):
            seen["key"] = request.url.params.get("key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "answer"}]}}]})

        reply = self._client(handler).complete("What is recursion?", simple_mode=True)
        self.assertEqual(reply, "answer")
        self.assertEqual(seen["key"], "test-key")
        self.assertEqual(seen["body"]["contents"][0]["parts"][0]["text"],
                         frame_prompt("What is recursion?", True))

    def test_http_error_becomes_completion_error(self):
        client = self._client(lambda request: httpx.Response(500, json={"error": "boom"}))
        with self.assertLogs("techtutor", level="WARNING"):
            with self.assertRaises(CompletionError):
                client.complete("x")

    def test_malformed_body_becomes_completion_error(self):
        client = self._client(lambda request: httpx.Response(200, json={"candidates": []}))
        with self.assertLogs("techtutor", level="WARNING"):
            with self.assertRaises(CompletionError):
                client.complete("x")

    def test_transport_error_becomes_completion_error(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        with self.assertLogs("techtutor", level="WARNING"):
            with self.assertRaises(CompletionError):
                self._client(handler).complete("x")

    @override_settings(GEMINI_API_KEY="")
    def test_missing_key(self):
        def handler(request):
            raise AssertionError("no request expected")

        with self.assertLogs("techtutor", level="WARNING"):
            with self.assertRaises(CompletionError):
                self._client(handler).complete("x")


class ChatApiTests(SimpleTestCase):
    def _post_chat(self, message, simple_mode=False):
        return self.client.post(reverse("chat"), {"message": message, "simple_mode": simple_mode},
                                content_type="application/json")

    def test_health(self):
        resp = self.client.get(reverse("health"))
        self.assertEqual(resp.json()["app"], "techtutor")

    def test_submit_and_state(self):
        fake = FakeCompletion(reply="Use **recursion**")
        with mock.patch("chat.views.get_completion_client", return_value=fake):
            resp = self._post_chat("What is recursion?")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data["ok"])
        self.assertEqual(data["conversations"][0]["title"], "What is recursion?")
        self.assertEqual(data["active_id"], data["conversations"][0]["id"])
        self.assertEqual([m["role"] for m in data["messages"]], ["user", "assistant"])
        self.assertIn("<strong", data["messages"][1]["html"])
        self.assertEqual(fake.calls, [("What is recursion?", False)])

        state = self.client.get(reverse("chat_state")).json()
        self.assertEqual(len(state["messages"]), 2)
        self.assertFalse(state["pending"])

    def test_empty_message_is_ignored(self):
        fake = FakeCompletion()
        with mock.patch("chat.views.get_completion_client", return_value=fake):
            resp = self._post_chat("   ")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["ignored"])
        self.assertEqual(resp.json()["conversations"], [])
        self.assertEqual(fake.calls, [])

    @override_settings(MESSAGE_MAX_CHARS=10)
    def test_too_long_message(self):
        resp = self._post_chat("x" * 11)
        self.assertEqual(resp.status_code, 400)

    def test_upstream_failure_is_visible(self):
        fake = FakeCompletion(error=CompletionError("Failed to get response from AI. Please try again."))
        with mock.patch("chat.views.get_completion_client", return_value=fake):
            with self.assertLogs("techtutor", level="WARNING"):
                resp = self._post_chat("hello")
        self.assertEqual(resp.status_code, 502)
        data = resp.json()
        self.assertEqual([m["role"] for m in data["messages"]], ["user"])
        self.assertIn("Failed", data["error"])
        self.assertFalse(data["pending"])

    def test_in_flight_submit_gets_conflict(self):
        session = self.client.session
        store = ChatStore()
        store.begin_submit("first")
        session["chat"] = store.to_dict()
        session.save()
        with mock.patch("chat.views.get_completion_client", return_value=FakeCompletion()):
            resp = self._post_chat("second")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "a message is already in flight")
        self.assertEqual([m["content"] for m in resp.json()["messages"]], ["first"])

    def test_unexpected_client_failure_releases_the_session(self):
        broken = FakeCompletion(error=RuntimeError("bad url"))
        with mock.patch("chat.views.get_completion_client", return_value=broken):
            with self.assertLogs("techtutor", level="WARNING"):
                resp = self._post_chat("first")
        self.assertEqual(resp.status_code, 502)
        self.assertFalse(resp.json()["pending"])
        self.assertIn("Failed", resp.json()["error"])

        with mock.patch("chat.views.get_completion_client", return_value=FakeCompletion(reply="fine")):
            resp = self._post_chat("second")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([m["content"] for m in resp.json()["messages"]], ["first", "second", "fine"])

    def _change_session_during_reply(self, change):
        session_key = self.client.session.session_key
        engine = import_module(settings.SESSION_ENGINE)

        class ChangesChatWhileWaiting(FakeCompletion):
            def complete(self, prompt, simple_mode=False):
                other = engine.SessionStore(session_key)
                store = ChatStore.from_dict(other["chat"])
                change(store)
                other["chat"] = store.to_dict()
                other.save()
                return super().complete(prompt, simple_mode)

        with mock.patch("chat.views.get_completion_client", return_value=ChangesChatWhileWaiting(reply="late")):
            return self._post_chat("question")

    def test_reply_dropped_after_new_chat(self):
        resp = self._change_session_during_reply(lambda store: store.start_new_chat())
        data = resp.json()
        self.assertEqual(data["messages"], [])
        self.assertIsNone(data["active_id"])
        self.assertFalse(data["pending"])
        self.assertEqual(len(data["conversations"]), 1)

        state = self.client.get(reverse("chat_state")).json()
        self.assertEqual(state["messages"], [])
        self.assertFalse(state["pending"])

    def test_reply_dropped_after_delete(self):
        resp = self._change_session_during_reply(lambda store: store.delete_conversation(store.active_id))
        data = resp.json()
        self.assertEqual(data["messages"], [])
        self.assertEqual(data["conversations"], [])
        self.assertFalse(data["pending"])

    def test_simple_mode_flag_parsing(self):
        fake = FakeCompletion()
        with mock.patch("chat.views.get_completion_client", return_value=fake):
            for flag in ("false", "true", False, True, "0", 1):
                self.client.post(reverse("new_conversation"))
                self._post_chat("question", simple_mode=flag)
        self.assertEqual([simple for _, simple in fake.calls], [False, True, False, True, False, True])

    def test_new_select_delete(self):
        with mock.patch("chat.views.get_completion_client", return_value=FakeCompletion()):
            first = self._post_chat("first").json()["active_id"]
            self.client.post(reverse("new_conversation"))
            second = self._post_chat("second").json()["active_id"]

        resp = self.client.post(reverse("select_conversation", args=[first]))
        self.assertEqual(resp.json()["active_id"], first)
        self.assertEqual(resp.json()["messages"], [])

        resp = self.client.post(reverse("select_conversation", args=[12345]))
        self.assertEqual(resp.status_code, 404)

        resp = self.client.delete(reverse("delete_conversation", args=[second]))
        self.assertEqual([c["id"] for c in resp.json()["conversations"]], [first])
        self.assertEqual(resp.json()["active_id"], first)

        resp = self.client.delete(reverse("delete_conversation", args=[first]))
        self.assertEqual(resp.json()["conversations"], [])
        self.assertIsNone(resp.json()["active_id"])

    def test_suggestions_endpoint(self):
        resp = self.client.get(reverse("suggestions"), {"category": "Programming"})
        self.assertIn("What is recursion?", resp.json()["data"])
        resp = self.client.get(reverse("suggestions"))
        self.assertEqual(set(resp.json()["data"]), set(SUGGESTIONS))

    def test_programming_suggestion_end_to_end(self):
        page = self.client.get(reverse("chat_page"), {"category": "Programming"})
        self.assertContains(page, 'data-text="What is recursion?"')

        fake = FakeCompletion(reply="Recursion:\n* a function calls itself\n```py\ndef f(): return f()\n```")
        with mock.patch("chat.views.get_completion_client", return_value=fake):
            data = self._post_chat("What is recursion?").json()

        self.assertEqual(fake.calls, [("What is recursion?", False)])
        self.assertEqual(frame_prompt(*fake.calls[0]),
                         "Please provide a detailed technical explanation for: What is recursion?")
        self.assertEqual(data["conversations"][0]["title"], "What is recursion?")
        self.assertEqual(data["messages"][0], {
            "role": "user", "content": "What is recursion?", "html": "What is recursion?",
        })
        rendered = data["messages"][1]["html"]
        self.assertIn("<li", rendered)
        self.assertEqual(DATA_CODE_RE.findall(rendered), ["def f(): return f()"])

        page = self.client.get(reverse("index"))
        self.assertContains(page, "What is recursion?")
        self.assertContains(page, 'class="copy-button')


class AskCommandTests(SimpleTestCase):
    def test_prints_reply(self):
        with mock.patch("chat.management.commands.ask.GeminiClient") as client_cls:
            client_cls.return_value.complete.return_value = "pong"
            out = io.StringIO()
            call_command("ask", "ping", "--simple", stdout=out)
        self.assertIn("pong", out.getvalue())
        client_cls.return_value.complete.assert_called_once_with("ping", True)

    def test_failure_is_command_error(self):
        with mock.patch("chat.management.commands.ask.GeminiClient") as client_cls:
            client_cls.return_value.complete.side_effect = CompletionError("nope")
            with self.assertRaises(CommandError):
                call_command("ask", "ping")
