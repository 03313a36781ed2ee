#!/usr/bin/env python3
"""
Test script for message splitting functionality
"""
import pytest

from chatbridge.utils.message_splitter import escape_html, needs_splitting, split_message


def test_message_splitter():
    """Test the message splitting logic"""
    print("=" * 60)
    print("Testing Message Splitter for the 2000-char Discord limit")
    print("=" * 60)

    # Test 1: Short message (should not split)
    print("\n📝 Test 1: Short message (under 2000 chars)")
    short_msg = "  Hello! This is a short message. 🌴  "
    print(f"Needs splitting: {needs_splitting(short_msg, 2000)}")
    chunks = split_message(short_msg, 2000)
    assert chunks == ["Hello! This is a short message. 🌴"], "Short message should come back trimmed and whole"
    print("✅ PASS")

    # Test 2: Long message of paragraphs (should split on blank lines)
    print("\n📝 Test 2: Long message (over 2000 chars)")
    paragraph = "This paragraph talks about the weather and the beach. " * 9
    long_msg = "\n\n".join(paragraph.strip() for _ in range(8))
    print(f"Length: {len(long_msg)} chars")
    assert needs_splitting(long_msg, 2000)
    chunks = split_message(long_msg, 2000)
    print(f"Result: {len(chunks)} chunk(s)")
    assert len(chunks) > 1
    for idx, chunk in enumerate(chunks, 1):
        print(f"--- Chunk {idx} ({len(chunk)} chars)")
        assert len(chunk) <= 2000, f"Chunk {idx} exceeds 2000 chars!"
        assert chunk == chunk.strip()
        assert chunk.endswith("beach."), "Chunks should end on a paragraph boundary"
    print("✅ PASS")

    # Test 3: Exactly 2000 chars (should not split)
    print("\n📝 Test 3: Exactly 2000 chars")
    exact_msg = "A" * 2000
    assert not needs_splitting(exact_msg, 2000)
    assert len(split_message(exact_msg, 2000)) == 1, "2000-char message should not be split"
    print("✅ PASS")

    # Test 4: 2001 chars with no boundary (hard cut)
    print("\n📝 Test 4: 2001 chars (just over limit)")
    over_msg = "A" * 2001
    chunks = split_message(over_msg, 2000)
    assert len(chunks) == 2, "2001-char message should split into 2 chunks"
    assert "".join(chunks) == over_msg
    print("✅ PASS")

    print("\n" + "=" * 60)
    print("✅ ALL TESTS PASSED!")
    print("=" * 60)


def test_split_prefers_late_boundaries():
    # Only a boundary past the halfway mark is used
    text = "ab cdefghijklmnopqrstuvwxyz"
    chunks = split_message(text, 10)
    assert chunks[0] == "ab cdefghi"
    assert all(len(chunk) <= 10 for chunk in chunks)
    assert chunks == ["ab cdefghi", "jklmnopqrs", "tuvwxyz"]

    sentences = "One two. Three four five six."
    chunks = split_message(sentences, 20)
    assert chunks == ["One two. Three four", "five six."]


def test_split_rejects_tiny_limits():
    with pytest.raises(ValueError):
        split_message("hello", 1)


def test_escape_html():
    assert escape_html('<a href="x">Tom & Jerry\'s</a>') == (
        "&lt;a href=&quot;x&quot;&gt;Tom &amp; Jerry&#39;s&lt;/a&gt;"
    )
    assert escape_html("plain") == "plain"


if __name__ == "__main__":
    test_message_splitter()
    test_split_prefers_late_boundaries()
    test_split_rejects_tiny_limits()
    test_escape_html()
