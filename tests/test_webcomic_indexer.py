from sources.base import SearchRequest
from mangascope_app.search.store import CatalogStore
from mangascope_app.sync.state import SyncStateStore
from mangascope_app.sync.webcomics import ALPHABET_QUERIES, WebcomicIndexer

from conftest import make_aggregator


class WorkerKilled(BaseException):
    """Simulates the process dying mid-crawl."""


class FakeEngine:
    """fetch_provider stand-in: one title per (provider, query), optional failures."""

    def __init__(self, fail=None, crash_at=None):
        self.fail = fail or set()
        self.crash_at = crash_at
        self.calls = []

    def fetch_provider(self, provider, query, batch_size=None, max_pages=None, batch_delay=0.0):
        self.calls.append((provider, query))
        if (provider, query) == self.crash_at:
            raise WorkerKilled
        if (provider, query) in self.fail:
            raise RuntimeError("provider exploded")
        item = make_aggregator(f"{query}-1", f"{provider} {query}", provider=provider)
        return [item, item]


def make_indexer(db, engine, providers=("p1", "p2")):
    state = SyncStateStore(db)
    state.claim("aggregator")
    sleeps = []
    indexer = WebcomicIndexer(engine, state, db, sleep=sleeps.append, providers=providers)
    return indexer, state, sleeps


def test_full_crawl_indexes_every_provider_and_query(db):
    engine = FakeEngine()
    indexer, state, sleeps = make_indexer(db, engine)

    report = indexer.run()

    per_provider = len(ALPHABET_QUERIES)
    assert report.success
    assert report.total_processed == 2 * per_provider
    assert len(engine.calls) == 2 * per_provider
    assert sleeps == [0.5] * (2 * per_provider)
    status = state.get("aggregator")
    assert status["status"] == "idle"
    assert status["totalIndexedCount"] == 2 * per_provider
    assert status["lastProvider"] is None
    assert status["lastQuery"] is None
    assert CatalogStore(db).count("aggregator") == 2 * per_provider


def test_failing_query_is_skipped(db):
    engine = FakeEngine(fail={("p1", "b")})
    indexer, _, _ = make_indexer(db, engine, providers=("p1",))

    report = indexer.run()

    assert report.success
    assert report.total_processed == len(ALPHABET_QUERIES) - 1
    assert ("p1", "c") in engine.calls


def test_resume_from_checkpoint(db):
    indexer, state, _ = make_indexer(db, FakeEngine())
    state.checkpoint("aggregator", "p2", "x", 40)

    plan = indexer.plan()

    assert plan == [("p2", ["y", "z"] + ALPHABET_QUERIES[26:])]


def test_checkpoint_for_unknown_provider_is_ignored(db):
    indexer, state, _ = make_indexer(db, FakeEngine())
    state.checkpoint("aggregator", "gone", "m", 10)

    plan = indexer.plan()

    assert [name for name, _ in plan] == ["p1", "p2"]
    assert plan[0][1] == ALPHABET_QUERIES


def test_full_flag_and_explicit_provider_ignore_checkpoint(db):
    indexer, state, _ = make_indexer(db, FakeEngine())
    state.checkpoint("aggregator", "p2", "x", 40)

    assert [name for name, _ in indexer.plan(full=True)] == ["p1", "p2"]
    assert indexer.plan(provider="p1", query="y") == [("p1", ALPHABET_QUERIES[ALPHABET_QUERIES.index("y"):])]


def test_interrupted_run_resumes_after_last_checkpoint(db):
    engine = FakeEngine(crash_at=("p1", "d"))
    indexer, state, _ = make_indexer(db, engine, providers=("p1",))

    try:
        indexer.run()
    except WorkerKilled:
        pass

    status = state.get("aggregator")
    assert status["lastProvider"] == "p1"
    assert status["lastQuery"] == "c"
    assert status["totalIndexedCount"] == 3

    resumed = WebcomicIndexer(FakeEngine(), state, db, sleep=lambda s: None, providers=("p1",))
    assert resumed.plan()[0][1][0] == "d"


def test_indexed_rows_are_searchable(db):
    indexer, _, _ = make_indexer(db, FakeEngine(), providers=("p1",))
    indexer.run(query="9")

    items, total = CatalogStore(db).structured_search(SearchRequest(query="p1 9"), "aggregator")
    assert total == 1
    assert items[0].provider_name == "p1"
