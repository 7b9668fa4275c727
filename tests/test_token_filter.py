"""Tests for control-token stripping."""

from lai_runtime.shared.token_filter import DEFAULT_CONTROL_TOKENS, TokenFilter, filter_control_tokens


class TestFilterControlTokens:

    def test_removes_token_between_words(self):
        assert filter_control_tokens("hello<eos>world") == "helloworld"

    def test_fragment_of_only_tokens_becomes_empty(self):
        assert filter_control_tokens("<end_of_turn></s>") == ""

    def test_partial_prefix_passes_through(self):
        """A fragment holding only the start of a token is not a match."""
        assert filter_control_tokens("<end_of") == "<end_of"

    def test_split_token_is_not_reassembled(self):
        f = TokenFilter()
        assert f("text<end_") + f("of_turn>") == "text<end_of_turn>"

    def test_idempotent(self):
        f = TokenFilter()
        for fragment in ["a<eos>b", "<eo<eos>s>", "<|im_<|im_end|>start|>x", "plain"]:
            once = f(fragment)
            assert f(once) == once

    def test_nested_token_is_fully_removed(self):
        assert filter_control_tokens("<eo<eos>s>") == ""

    def test_tokens_are_literal_not_regex(self):
        f = TokenFilter(["a.c", "[x]"])
        assert f("abc a.c [x] x") == "abc   x"

    def test_empty_input(self):
        assert filter_control_tokens("") == ""
        assert TokenFilter()("") == ""

    def test_empty_token_list_is_identity(self):
        assert TokenFilter([])("<eos>") == "<eos>"

    def test_default_list(self):
        f = TokenFilter()
        assert f.tokens == DEFAULT_CONTROL_TOKENS
        for token in DEFAULT_CONTROL_TOKENS:
            assert f(f"x{token}y") == "xy"
