"""Tests for reconciliation and single-page processing."""

from unittest.mock import MagicMock

import mwclient.errors
import pytest
import requests

import viewcount_bot as bot
from viewcount_providers import BilibiliAdapter, ErrorCause, Provider, ProviderError, QuotaExceeded

from conftest import fake_adapter, song_page


def task(text, title="Song"):
    return bot.PageTask(title, text, "token+\\")


class TestApplySubstitutions:
    def test_replaces_by_position(self):
        doc = "a {{v|yt|1}} b {{v|yt|1}} c"
        second = doc.rindex("{{v")
        subs = [bot.Substitution(second, second + len("{{v|yt|1}}"), "{{v|yt|9}}")]
        assert bot.apply_substitutions(doc, subs) == "a {{v|yt|1}} b {{v|yt|9}} c"

    def test_multiple_substitutions_of_different_length(self):
        doc = "{{v|yt|1}}-{{v|nn|2}}"
        subs = [
            bot.Substitution(0, 10, "{{v|yt|1,000,000}}"),
            bot.Substitution(11, 21, "{{v|nn|22}}"),
        ]
        assert bot.apply_substitutions(doc, subs) == "{{v|yt|1,000,000}}-{{v|nn|22}}"

    def test_no_substitutions_returns_input(self):
        assert bot.apply_substitutions("text", []) == "text"


class TestReconcile:
    def test_changed_bucket_rewrites_view(self, make_ctx, yt_registry, yt_counts):
        """999 shows as 990 and 1450 as 1400, so the template is rewritten."""
        text = song_page("{{v|yt|999}}", "{{l|yt|abc123}}")
        yt_counts["abc123"] = 1450
        ctx = make_ctx(yt_registry)
        result = bot.reconcile(text, bot.extract(text), ctx)
        assert "{{v|yt|1,450}}" in result
        assert "{{v|yt|999}}" not in result

    def test_same_bucket_leaves_document_identical(self, make_ctx, yt_registry, yt_counts):
        text = song_page("{{v|yt|1,234}}", "{{l|yt|abc}}")
        yt_counts["abc"] = 1299
        result = bot.reconcile(text, bot.extract(text), make_ctx(yt_registry))
        assert result == text

    def test_identical_templates_each_rewritten_once(self, make_ctx, yt_registry, yt_counts):
        """Two textually identical {{v}} templates get their own counts."""
        text = song_page("{{v|yt|100}} {{v|yt|100}}", "{{l|yt|a}} {{l|yt|b}}")
        yt_counts.update({"a": 100, "b": 5000})
        result = bot.reconcile(text, bot.extract(text), make_ctx(yt_registry))
        assert "|views = {{v|yt|100}} {{v|yt|5,000}}\n" in result

    def test_only_paired_template_is_touched(self, make_ctx, yt_registry, yt_counts):
        text = song_page("{{v|yt|100}} {{v|yt|100}}", "{{l|yt|a}} {{l|yt|b}}")
        yt_counts.update({"a": 5000, "b": 100})
        result = bot.reconcile(text, bot.extract(text), make_ctx(yt_registry))
        assert "|views = {{v|yt|5,000}} {{v|yt|100}}\n" in result

    def test_label_suffix_is_preserved(self, make_ctx, yt_registry, yt_counts):
        text = song_page("{{v|yt|999|as of 2019}}", "{{l|yt|abc}}")
        yt_counts["abc"] = 20000
        result = bot.reconcile(text, bot.extract(text), make_ctx(yt_registry))
        assert "{{v|yt|20,000|as of 2019}}" in result

    def test_unparsable_recorded_count_is_replaced(self, make_ctx, yt_registry, yt_counts):
        text = song_page("{{v|yt|unknown}}", "{{l|yt|abc}}")
        yt_counts["abc"] = 42
        result = bot.reconcile(text, bot.extract(text), make_ctx(yt_registry))
        assert "{{v|yt|42}}" in result

    def test_provider_error_skips_only_that_match(self, make_ctx, caplog):
        text = song_page("{{v|yt|10}} {{v|nn|10}}", "{{l|yt|gone}} {{l|nn|sm9}}")
        registry = {
            Provider.YOUTUBE: fake_adapter({"gone": ProviderError(ErrorCause.NOT_FOUND, "gone")}),
            Provider.NICONICO: fake_adapter({"sm9": 5000}),
        }
        result = bot.reconcile(text, bot.extract(text, registry), make_ctx(registry))
        assert "{{v|yt|10}}" in result
        assert "{{v|nn|5,000}}" in result
        assert any("gone" in r.getMessage() for r in caplog.records)

    def test_malformed_provider_payload_skips_only_that_match(self, make_ctx):
        """A real adapter fed a non-numeric count must not sink the other match."""
        text = song_page("{{v|bb|10}} {{v|nn|10}}", "{{l|bb|1}} {{l|nn|sm9}}")
        session = MagicMock(spec=requests.Session)
        resp = MagicMock(status_code=200)
        resp.json.return_value = {"data": {"view": "n/a"}}
        session.get.return_value = resp
        registry = {
            Provider.BILIBILI: BilibiliAdapter(session),
            Provider.NICONICO: fake_adapter({"sm9": 5000}),
        }
        result = bot.reconcile(text, bot.extract(text, registry), make_ctx(registry))
        assert "{{v|bb|10}}" in result
        assert "{{v|nn|5,000}}" in result

    def test_quota_exceeded_propagates(self, make_ctx, yt_registry, yt_counts):
        text = song_page("{{v|yt|10}}", "{{l|yt|abc}}")
        yt_counts["abc"] = QuotaExceeded("daily limit")
        with pytest.raises(QuotaExceeded):
            bot.reconcile(text, bot.extract(text), make_ctx(yt_registry))

    def test_adapter_receives_recorded_count(self, make_ctx, yt_registry, yt_counts):
        text = song_page("{{v|yt|1,234}}", "{{l|yt|abc}}")
        yt_counts["abc"] = 1234
        bot.reconcile(text, bot.extract(text), make_ctx(yt_registry))
        yt_registry[Provider.YOUTUBE].fetch.assert_called_once_with("abc", 1234)


class TestProcessPage:
    def test_no_matches_is_noop(self, make_ctx, yt_registry, mock_site):
        outcome = bot.process_page(task("Just prose."), make_ctx(yt_registry))
        assert outcome is bot.PageOutcome.NO_MATCHES
        mock_site.post.assert_not_called()

    def test_unchanged_page_skips_edit(self, make_ctx, yt_registry, yt_counts, mock_site):
        yt_counts["abc"] = 1299
        outcome = bot.process_page(
            task(song_page("{{v|yt|1,234}}", "{{l|yt|abc}}")), make_ctx(yt_registry)
        )
        assert outcome is bot.PageOutcome.UNCHANGED
        mock_site.post.assert_not_called()

    def test_changed_page_is_saved(self, make_ctx, yt_registry, yt_counts, mock_site):
        text = song_page("{{v|yt|999}}", "{{l|yt|abc123}}")
        yt_counts["abc123"] = 1450
        outcome = bot.process_page(task(text), make_ctx(yt_registry))

        assert outcome is bot.PageOutcome.EDITED
        mock_site.post.assert_called_once()
        args, kwargs = mock_site.post.call_args
        assert args == ("edit",)
        assert kwargs["title"] == "Song"
        assert kwargs["text"] == text.replace("{{v|yt|999}}", "{{v|yt|1,450}}")
        assert kwargs["token"] == "token+\\"
        assert kwargs["bot"] == 1
        assert kwargs["minor"] == 1

    def test_no_bot_flag_omits_bot(self, make_ctx, yt_registry, yt_counts, mock_site):
        yt_counts["abc"] = 1450
        bot.process_page(
            task(song_page("{{v|yt|999}}", "{{l|yt|abc}}")),
            make_ctx(yt_registry, no_bot_flag=True),
        )
        assert "bot" not in mock_site.post.call_args.kwargs

    def test_no_edit_is_dry_run(self, make_ctx, yt_registry, yt_counts, mock_site):
        yt_counts["abc"] = 1450
        outcome = bot.process_page(
            task(song_page("{{v|yt|999}}", "{{l|yt|abc}}")),
            make_ctx(yt_registry, no_edit=True),
        )
        assert outcome is bot.PageOutcome.DRY_RUN
        mock_site.post.assert_not_called()

    def test_edit_api_error_is_logged(self, make_ctx, yt_registry, yt_counts, mock_site, caplog):
        yt_counts["abc"] = 1450
        mock_site.post.side_effect = mwclient.errors.APIError("protectedpage", "protected", {})
        outcome = bot.process_page(
            task(song_page("{{v|yt|999}}", "{{l|yt|abc}}")), make_ctx(yt_registry)
        )
        assert outcome is bot.PageOutcome.EDIT_FAILED
        assert any("protected" in r.getMessage() for r in caplog.records)
