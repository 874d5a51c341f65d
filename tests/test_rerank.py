from __future__ import annotations

import pytest

from internalwiki.retrieval.expansion import classify_query_intent, generate_query_variations
from internalwiki.retrieval.rerank import rerank_hybrid


def test_rerank_orders_by_combined_score(make_chunk):
    chunks = [
        make_chunk("a-0", "alpha", rank=0, source_score=20),
        make_chunk("b-0", "beta", rank=1, source_score=90),
    ]
    ranked = rerank_hybrid(chunks, [0.2, 0.9], [0.3, 0.8])
    assert [chunk.chunk_id for chunk in ranked] == ["b-0", "a-0"]
    # 0.7 * (0.45 + 0.55) + 0.3 * 0.9
    assert ranked[0].combined_score == pytest.approx(0.97)


def test_rerank_ties_keep_rank_then_chunk_id(make_chunk):
    chunks = [
        make_chunk("z-0", "same", rank=1),
        make_chunk("y-0", "same", rank=0),
        make_chunk("x-0", "same", rank=1),
    ]
    ranked = rerank_hybrid(chunks, [0.5, 0.5, 0.5], [0.5, 0.5, 0.5])
    assert [chunk.chunk_id for chunk in ranked] == ["y-0", "x-0", "z-0"]


def test_rerank_limit_and_zero_scores(make_chunk):
    chunks = [make_chunk(f"d{i}-0", "text", rank=i, source_score=50) for i in range(4)]
    ranked = rerank_hybrid(chunks, [0, 0, 0, 0], [-1, 0, 0, 0], limit=2)
    assert len(ranked) == 2
    assert all(chunk.combined_score == pytest.approx(0.15) for chunk in ranked)
    assert len(rerank_hybrid(chunks, [0] * 4, [0] * 4)) == 4


def test_rerank_rejects_misaligned_scores(make_chunk):
    with pytest.raises(ValueError, match="must align"):
        rerank_hybrid([make_chunk("a-0", "alpha")], [0.1, 0.2], [0.1])


@pytest.mark.parametrize("leg", ["lexical", "semantic"])
@pytest.mark.parametrize("bump", [0.05, 0.4, 3.0])
def test_raising_a_score_never_drops_a_chunk_below_unchanged_ones(make_chunk, leg, bump):
    chunks = [make_chunk(f"d{i}-0", "text", rank=i, source_score=score) for i, score in enumerate((40, 85, 60, 70))]
    lexical = [0.3, 0.1, 0.6, 0.3]
    semantic = [0.5, 0.2, 0.4, 0.5]

    def above(ranked, chunk_id):
        ids = [chunk.chunk_id for chunk in ranked]
        return set(ids[: ids.index(chunk_id)])

    baseline = rerank_hybrid(chunks, lexical, semantic)
    for index, chunk in enumerate(chunks):
        raised_lexical = list(lexical)
        raised_semantic = list(semantic)
        target = raised_lexical if leg == "lexical" else raised_semantic
        target[index] += bump
        raised = rerank_hybrid(chunks, raised_lexical, raised_semantic)
        assert above(raised, chunk.chunk_id) <= above(baseline, chunk.chunk_id)


def test_rerank_accepts_already_ranked_chunks(make_chunk):
    first = rerank_hybrid([make_chunk("a-0", "alpha")], [1.0], [1.0])
    again = rerank_hybrid(first, [1.0], [1.0])
    assert again[0].chunk_id == "a-0"


@pytest.mark.parametrize(
    ("query", "intent"),
    [
        ("How do I request laptop access?", "procedural"),
        ("Why did churn increase last quarter?", "analytical"),
        ("Who owns the billing service?", "factual"),
    ],
)
def test_classify_query_intent(query, intent):
    assert classify_query_intent(query) == intent


def test_generate_query_variations_rewrites_leading_word():
    variations = generate_query_variations("What is the launch date?")
    assert variations[0] == "What is the launch date?"
    assert "which is the launch date?" in variations
    assert len(variations) <= 5
    assert generate_query_variations("Launch date?") == ["Launch date?"]
