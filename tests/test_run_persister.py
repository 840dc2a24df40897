from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from app.core.exceptions import RunPersistenceError
from app.models.cluster import Cluster, ClusterInRun, ClusterMember, ClusterRun, Summary, TopDailyCluster
from app.schemas.cluster import LLMResult
from app.services.run_persister import RunContext, RunPersister
from app.services.scoring import ImpactScorer
from tests.factories import NOW, cluster_dict, insert_articles


def _context(article_ids, top_n=8, **overrides):
    values = dict(
        run_date=date(2024, 5, 1),
        window_start=NOW - timedelta(hours=12),
        window_end=NOW,
        model="gpt-test",
        prompt_hash="abcdef0123456789",
        top_n=top_n,
        article_ids=set(article_ids),
        tokens_in=1000,
        tokens_out=500,
    )
    values.update(overrides)
    return RunContext(**values)


def _result(clusters, top_summaries=None):
    result = LLMResult.model_validate({"clusters": clusters, "top_summaries": top_summaries or []})
    ImpactScorer().apply(result.clusters)
    return result


async def _count(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def _assert_rank_consistency(session_factory, run_id):
    async with session_factory() as db:
        ranked = (await db.execute(select(ClusterInRun).where(ClusterInRun.run_id == run_id))).scalars().all()
        tops = (await db.execute(select(TopDailyCluster).where(TopDailyCluster.run_id == run_id))).scalars().all()
        summaries = (await db.execute(select(Summary).where(Summary.run_id == run_id))).scalars().all()

    by_rank = {}
    for entry in ranked:
        by_rank.setdefault(entry.rank, []).append(entry.cluster_id)
    assert all(len(ids) == 1 for ids in by_rank.values())
    for top in tops:
        assert by_rank[top.rank] == [top.cluster_id]
    top_cluster_ids = {top.cluster_id for top in tops}
    for summary in summaries:
        assert summary.cluster_id in top_cluster_ids


async def test_persists_full_snapshot(session_factory):
    ids = await insert_articles(session_factory, 5)
    result = _result(
        [
            cluster_dict(1, ids[:2], market_impact_score=0.9),
            cluster_dict(2, ids[2:4], market_impact_score=0.6),
            cluster_dict(3, ids[4:], market_impact_score=0.2),
        ],
        [{"cluster_rank": 1, "summary": "Fed holds rates."}, {"cluster_rank": 2, "summary": "Oil slips."}],
    )
    persister = RunPersister(session_factory, price_in_per_1k=0.01, price_out_per_1k=0.03)

    outcome = await persister.persist(result, _context(ids))

    assert outcome.top_ranks == [1, 2]
    assert outcome.memberships == 5
    assert outcome.summaries == 2
    assert outcome.warnings == []
    assert len(outcome.cluster_ids) == 3
    assert await _count(session_factory, ClusterRun) == 1
    assert await _count(session_factory, Cluster) == 3
    assert await _count(session_factory, ClusterInRun) == 3
    assert await _count(session_factory, TopDailyCluster) == 2
    assert await _count(session_factory, Summary) == 2
    await _assert_rank_consistency(session_factory, outcome.run_id)

    async with session_factory() as db:
        run = await db.get(ClusterRun, outcome.run_id)
        summary = (await db.execute(select(Summary).order_by(Summary.id))).scalars().first()
    assert run.prompt_hash == "abcdef0123456789"
    assert run.run_date == date(2024, 5, 1)
    assert summary.tokens_in == 1000
    assert summary.tokens_out == 500
    assert summary.cost_estimate == pytest.approx(0.01 + 0.015)


async def test_rank_map_uses_declared_rank_not_position(session_factory):
    ids = await insert_articles(session_factory, 2)
    result = _result(
        [cluster_dict(2, [ids[0]], label="Second"), cluster_dict(1, [ids[1]], label="First")],
        [{"cluster_rank": 1, "summary": "First summary"}],
    )

    outcome = await RunPersister(session_factory).persist(result, _context(ids))

    async with session_factory() as db:
        top = (await db.execute(select(TopDailyCluster))).scalar_one()
        cluster = await db.get(Cluster, top.cluster_id)
    assert top.rank == 1
    assert cluster.label == "First 1"
    assert top.cluster_id == outcome.cluster_ids[1]
    await _assert_rank_consistency(session_factory, outcome.run_id)


async def test_unresolvable_top_rank_is_skipped_with_warning(session_factory):
    ids = await insert_articles(session_factory, 2)
    result = _result(
        [cluster_dict(1, [ids[0]]), cluster_dict(2, [ids[1]])],
        [{"cluster_rank": 1, "summary": "ok"}, {"cluster_rank": 7, "summary": "orphan"}, {"cluster_rank": 1, "summary": "dup"}],
    )

    outcome = await RunPersister(session_factory).persist(result, _context(ids))

    assert outcome.top_ranks == [1]
    assert outcome.summaries == 1
    assert any("7" in w for w in outcome.warnings)
    assert await _count(session_factory, TopDailyCluster) == 1
    assert await _count(session_factory, Summary) == 1
    await _assert_rank_consistency(session_factory, outcome.run_id)


async def test_falls_back_to_lowest_ranks_without_summaries(session_factory):
    ids = await insert_articles(session_factory, 4)
    result = _result([cluster_dict(rank, [ids[rank - 1]]) for rank in (3, 1, 4, 2)])

    outcome = await RunPersister(session_factory).persist(result, _context(ids, top_n=2))

    assert outcome.top_ranks == [1, 2]
    assert outcome.summaries == 0
    assert await _count(session_factory, Summary) == 0
    await _assert_rank_consistency(session_factory, outcome.run_id)


async def test_duplicate_and_unknown_members_are_skipped(session_factory):
    ids = await insert_articles(session_factory, 2)
    result = _result([cluster_dict(1, [ids[0], ids[0], ids[1], 999])])

    outcome = await RunPersister(session_factory).persist(result, _context(ids))

    assert outcome.memberships == 2
    assert len(outcome.warnings) == 1
    assert await _count(session_factory, ClusterMember) == 2


async def test_summary_text_is_collapsed_and_truncated(session_factory):
    ids = await insert_articles(session_factory, 1)
    result = _result([cluster_dict(1, ids)], [{"cluster_rank": 1, "summary": "word  \n " * 200}])

    await RunPersister(session_factory, summary_max_chars=300).persist(result, _context(ids))

    async with session_factory() as db:
        summary = (await db.execute(select(Summary))).scalar_one()
    assert len(summary.summary_text) == 300
    assert "  " not in summary.summary_text


async def test_failure_rolls_back_whole_run(session_factory):
    ids = await insert_articles(session_factory, 2)
    # duplicate ranks bypassing rank repair
    result = LLMResult.model_validate(
        {"clusters": [cluster_dict(1, [ids[0]], total_score=1.0), cluster_dict(1, [ids[1]], total_score=1.0)]}
    )

    with pytest.raises(RunPersistenceError) as excinfo:
        await RunPersister(session_factory).persist(result, _context(ids))

    assert excinfo.value.step == "map_ranks"
    assert await _count(session_factory, ClusterRun) == 0
    assert await _count(session_factory, Cluster) == 0
