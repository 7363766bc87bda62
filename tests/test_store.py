"""Graph store semantics."""

import os
import threading

import pytest

from bitvm_bridge.errors import DuplicateSubmissionConflict
from bitvm_bridge.store import JsonFileStore, MemoryStore, nonce_key


class TestMemoryStore:

    def test_put_once(self):
        store = MemoryStore()
        assert store.put_once("confirm/g/peg_out", {"height": 5})
        assert not store.put_once("confirm/g/peg_out", {"height": 5})
        with pytest.raises(DuplicateSubmissionConflict):
            store.put_once("confirm/g/peg_out", {"height": 6})
        assert store.get("confirm/g/peg_out") == {"height": 5}

    def test_put_overwrites(self):
        store = MemoryStore()
        store.put("round/g/x", 0)
        store.put("round/g/x", 1)
        assert store.get("round/g/x") == 1

    def test_returns_copies(self):
        store = MemoryStore()
        store.put("graph/g", {"nodes": ["a"]})
        store.get("graph/g")["nodes"].append("b")
        assert store.get("graph/g") == {"nodes": ["a"]}

    def test_list_prefix(self):
        store = MemoryStore()
        store.put_once(nonce_key("g", "peg_in_confirm/0", 0, "02bb"), "n2")
        store.put_once(nonce_key("g", "peg_in_confirm/0", 0, "02aa"), "n1")
        store.put_once(nonce_key("h", "peg_in_confirm/0", 0, "02aa"), "other")
        listed = store.list_prefix("nonce/g/")
        assert list(listed.values()) == ["n1", "n2"]

    def test_missing_key(self):
        store = MemoryStore()
        assert store.get("nope") is None
        assert store.get("nope", default=3) == 3
        assert not store.exists("nope")


class TestJsonFileStore:

    def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "store.json")
        JsonFileStore(path).put_once("outcome/g", {"kind": "disproved"})
        assert JsonFileStore(path).get("outcome/g") == {"kind": "disproved"}

    def test_sees_other_writer(self, tmp_path):
        path = str(tmp_path / "store.json")
        reader = JsonFileStore(path)
        writer = JsonFileStore(path)
        writer.put_once("psig/g/x/r0/02aa", "ab" * 32)
        assert reader.exists("psig/g/x/r0/02aa")

    def test_conflict_survives_reload(self, tmp_path):
        path = str(tmp_path / "store.json")
        JsonFileStore(path).put_once("sig/g/x/r0", "aa")
        with pytest.raises(DuplicateSubmissionConflict):
            JsonFileStore(path).put_once("sig/g/x/r0", "bb")

    def test_concurrent_writers_keep_every_record(self, tmp_path):
        path = str(tmp_path / "store.json")
        stores = [JsonFileStore(path), JsonFileStore(path)]

        def write(store, tag):
            for i in range(100):
                store.put_once(nonce_key("g", "peg_out/0", 0, f"{tag}{i:03d}"), "ab" * 33)

        threads = [threading.Thread(target=write, args=(store, tag))
                   for store, tag in zip(stores, ("02aa", "02bb"))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(JsonFileStore(path).list_prefix("nonce/g/")) == 200
        assert not [name for name in os.listdir(tmp_path) if name.endswith(".tmp")]

    def test_put_once_is_atomic_across_instances(self, tmp_path):
        path = str(tmp_path / "store.json")
        stores = [JsonFileStore(path) for _ in range(4)]
        results = []

        def claim(store, value):
            try:
                results.append(store.put_once("outcome/g", {"tx_name": value}))
            except DuplicateSubmissionConflict:
                results.append(None)

        threads = [threading.Thread(target=claim, args=(store, f"tx{i}"))
                   for i, store in enumerate(stores)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert results.count(None) == 3
