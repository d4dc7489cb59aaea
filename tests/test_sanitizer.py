from breezy.services.sanitizer import sanitize_inbound, sanitize_outbound


class TestSanitizeInbound:

    def test_risk_words_substituted(self):
        assert sanitize_inbound("Can you hack the router?") == "Can you modify the router?"

    def test_case_insensitive(self):
        assert sanitize_inbound("KILL the noise") == "stop the noise"

    def test_whole_words_only(self):
        # "breakfast" contains "break" but is not a match
        assert sanitize_inbound("breakfast menu") == "breakfast menu"

    def test_known_false_positive_is_mangled(self):
        assert sanitize_inbound("I forgot my password") == "I forgot my credential"

    def test_whitespace_collapsed(self):
        assert sanitize_inbound("  hello \n  there  ") == "hello there"

    def test_none(self):
        assert sanitize_inbound(None) == ""


class TestSanitizeOutbound:

    def test_markdown_removed(self):
        assert sanitize_outbound("**Great!** We open at _9am_.") == "Great! We open at 9am."

    def test_trimmed_on_word_boundary(self):
        out = sanitize_outbound("one two three four five", max_length=12)
        assert out == "one two"

    def test_short_text_untouched(self):
        assert sanitize_outbound("Thanks for calling.", max_length=320) == "Thanks for calling."

    def test_substitutions_apply_outbound(self):
        assert sanitize_outbound("We can reset your password.") == "We can reset your credential."
