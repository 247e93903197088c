"""Tests for the SQLite manifest index."""

import threading

import pytest

from trusthash.bit_vector import binary_to_floats
from trusthash.errors import ConflictError, FormatError, NotFoundError, ValidationError
from trusthash.manifest_store import ManifestStore, SoftBindingRecord, validate_vector


class TestInsertAndRead:
    def test_insert_returns_stored_record(self, store, make_record):
        stored = store.insert(make_record("tx-1", block_height=100, claim_generator="gen/1.0"))
        assert stored.manifest_tx_id == "tx-1"
        assert stored.manifest_id == "urn:uuid:tx-1"
        assert stored.block_height == 100
        assert stored.claim_generator == "gen/1.0"
        assert stored.indexed_at

    def test_vector_roundtrip(self, store, make_record, bits):
        store.insert(make_record("tx-1", binary=bits(5)))
        assert store.get_by_tx_id("tx-1").phash == binary_to_floats(bits(5))

    def test_lookup_by_manifest_id(self, store, make_record):
        store.insert(make_record("tx-1", manifest_id="urn:c2pa:abc"))
        assert store.get_by_manifest_id("urn:c2pa:abc").manifest_tx_id == "tx-1"
        assert store.get_by_manifest_id("urn:c2pa:missing") is None

    def test_exists_and_count(self, store, make_record):
        assert not store.exists("tx-1")
        assert store.count() == 0
        store.insert(make_record("tx-1"))
        assert store.exists("tx-1")
        assert store.count() == 1

    def test_has_prior_manifest_flag(self, store, make_record):
        store.insert(make_record("tx-1", has_prior_manifest=True))
        assert store.get_by_tx_id("tx-1").has_prior_manifest is True

    def test_missing_tx_returns_none(self, store):
        assert store.get_by_tx_id("nope") is None

    def test_to_dict_keys(self, store, make_record):
        d = store.insert(make_record("tx-1")).to_dict()
        assert d["manifestTxId"] == "tx-1"
        assert d["manifestId"] == "urn:uuid:tx-1"
        assert "phash" not in d


class TestConflicts:
    def test_duplicate_tx_id(self, store, make_record):
        store.insert(make_record("tx-1"))
        with pytest.raises(ConflictError):
            store.insert(make_record("tx-1", manifest_id="urn:uuid:other"))
        assert store.count() == 1

    def test_duplicate_manifest_id(self, store, make_record):
        store.insert(make_record("tx-1", manifest_id="urn:uuid:same"))
        with pytest.raises(ConflictError):
            store.insert(make_record("tx-2", manifest_id="urn:uuid:same"))
        assert not store.exists("tx-2")

    def test_failed_insert_leaves_no_bindings(self, store, make_record, phash_binding):
        store.insert(make_record("tx-1", manifest_id="urn:uuid:same"), [phash_binding("AAAA")])
        with pytest.raises(ConflictError):
            store.insert(make_record("tx-1", manifest_id="urn:uuid:new"), [phash_binding("BBBB")])
        assert store.get_bindings("urn:uuid:new") == []
        assert [b.value_b64 for b in store.get_bindings("urn:uuid:same")] == ["AAAA"]

    def test_bindings_require_manifest_id(self, store, make_record, phash_binding):
        record = make_record("tx-1", manifest_id="")
        with pytest.raises(ValidationError):
            store.insert(record, [phash_binding("AAAA")])

    def test_rejects_bad_vector(self, store, make_record):
        record = make_record("tx-1")
        record.phash = [0.5] * 64
        with pytest.raises(FormatError):
            store.insert(record)
        record.phash = [0.0] * 63
        with pytest.raises(FormatError):
            store.insert(record)


class TestBindings:
    def test_insert_with_bindings(self, store, make_record, phash_binding):
        store.insert(make_record("tx-1"), [phash_binding("paWlpaWlpaU=", '{"region":1}')])
        bindings = store.get_bindings("urn:uuid:tx-1")
        assert bindings == [SoftBindingRecord("org.ar-io.phash", "paWlpaWlpaU=", '{"region":1}')]

    def test_replace_is_whole_set(self, store, make_record, phash_binding):
        store.insert(make_record("tx-1"), [phash_binding("AAAA"), phash_binding("BBBB")])
        store.replace_bindings("urn:uuid:tx-1", [phash_binding("CCCC")])
        assert [b.value_b64 for b in store.get_bindings("urn:uuid:tx-1")] == ["CCCC"]

    def test_replace_with_empty(self, store, make_record, phash_binding):
        store.insert(make_record("tx-1"), [phash_binding("AAAA")])
        store.replace_bindings("urn:uuid:tx-1", [])
        assert store.get_bindings("urn:uuid:tx-1") == []

    def test_replace_requires_manifest_id(self, store):
        with pytest.raises(ValidationError):
            store.replace_bindings("", [])

    def test_find_by_binding_orders_by_height(self, store, make_record, phash_binding):
        store.insert(make_record("tx-a", block_height=10), [phash_binding("AAAA")])
        store.insert(make_record("tx-b", block_height=20), [phash_binding("AAAA")])
        store.insert(make_record("tx-c", block_height=30), [phash_binding("BBBB")])
        found = store.find_by_binding("org.ar-io.phash", "AAAA")
        assert [r.manifest_tx_id for r in found] == ["tx-b", "tx-a"]

    def test_find_by_binding_wrong_alg(self, store, make_record, phash_binding):
        store.insert(make_record("tx-a"), [phash_binding("AAAA")])
        assert store.find_by_binding("other.alg", "AAAA") == []


class TestSearch:
    def test_exact_match_distance_zero(self, store, make_record, bits):
        store.insert(make_record("tx-1", binary=bits(8)))
        matches = store.search_by_vector(binary_to_floats(bits(8)))
        assert len(matches) == 1
        assert matches[0].distance == 0
        assert matches[0].record.manifest_tx_id == "tx-1"

    def test_threshold_boundary(self, store, make_record, bits):
        store.insert(make_record("tx-10", binary=bits(10)))
        query = binary_to_floats(bits(0))
        assert store.search_by_vector(query, threshold=9) == []
        matches = store.search_by_vector(query, threshold=10)
        assert [m.distance for m in matches] == [10]

    def test_ordered_by_distance(self, store, make_record, bits):
        store.insert(make_record("tx-far", binary=bits(6)))
        store.insert(make_record("tx-near", binary=bits(1)))
        store.insert(make_record("tx-mid", binary=bits(3)))
        matches = store.search_by_vector(binary_to_floats(bits(0)))
        assert [m.record.manifest_tx_id for m in matches] == ["tx-near", "tx-mid", "tx-far"]
        assert [m.distance for m in matches] == [1, 3, 6]

    def test_ties_broken_by_tx_id(self, store, make_record, bits):
        for tx in ("tx-c", "tx-a", "tx-b"):
            store.insert(make_record(tx, binary=bits(2)))
        matches = store.search_by_vector(binary_to_floats(bits(0)))
        assert [m.record.manifest_tx_id for m in matches] == ["tx-a", "tx-b", "tx-c"]

    def test_limit(self, store, make_record, bits):
        for i in range(5):
            store.insert(make_record(f"tx-{i}", binary=bits(i)))
        matches = store.search_by_vector(binary_to_floats(bits(0)), limit=2)
        assert [m.record.manifest_tx_id for m in matches] == ["tx-0", "tx-1"]

    def test_skips_records_without_manifest_id(self, store, make_record, bits):
        store.insert(make_record("tx-anon", manifest_id="", binary=bits(0)))
        store.insert(make_record("tx-named", binary=bits(0)))
        matches = store.search_by_vector(binary_to_floats(bits(0)))
        assert [m.record.manifest_tx_id for m in matches] == ["tx-named"]

    @pytest.mark.parametrize("threshold,limit", [(-1, 10), (65, 10), (10, 0), (10, 101)])
    def test_bounds(self, store, bits, threshold, limit):
        with pytest.raises(ValidationError):
            store.search_by_vector(binary_to_floats(bits(0)), threshold=threshold, limit=limit)

    def test_search_by_tx_id(self, store, make_record, bits):
        store.insert(make_record("tx-src", binary=bits(4)))
        store.insert(make_record("tx-other", binary=bits(5)))
        matches = store.search_by_tx_id("tx-src", threshold=2)
        assert [(m.record.manifest_tx_id, m.distance) for m in matches] == [
            ("tx-src", 0), ("tx-other", 1),
        ]

    def test_search_by_unknown_tx_id(self, store):
        with pytest.raises(NotFoundError):
            store.search_by_tx_id("missing")

    def test_match_to_dict(self, store, make_record, bits):
        store.insert(make_record("tx-1", binary=bits(1)))
        d = store.search_by_vector(binary_to_floats(bits(0)))[0].to_dict()
        assert d == {
            "manifestTxId": "tx-1",
            "manifestId": "urn:uuid:tx-1",
            "distance": 1,
            "contentType": "application/c2pa",
            "ownerAddress": "owner-1",
        }


class TestLifecycle:
    def test_ping(self, tmp_path):
        s = ManifestStore(tmp_path / "db" / "provenance.db")
        assert s.ping()
        s.close()
        assert not s.ping()

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "provenance.db"
        ManifestStore(path).close()
        assert path.exists()

    def test_persists_across_reopen(self, tmp_path, make_record):
        path = tmp_path / "provenance.db"
        s = ManifestStore(path)
        s.insert(make_record("tx-1"))
        s.close()
        s = ManifestStore(path)
        assert s.exists("tx-1")
        s.close()

    def test_concurrent_inserts(self, store, make_record):
        errors = []

        def worker(n):
            try:
                for i in range(10):
                    store.insert(make_record(f"tx-{n}-{i}"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert store.count() == 40


class TestValidateVector:
    def test_accepts_ints(self):
        assert validate_vector([1] * 64) == [1.0] * 64

    def test_rejects_fractional(self):
        with pytest.raises(FormatError):
            validate_vector([0.0] * 63 + [0.7])
