import threading
import unittest
from datetime import date

from backend.query_cache import QueryCache, freeze_params


class QueryCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.cache = QueryCache()
        self.calls = 0

    def loader(self) -> list:
        self.calls += 1
        return [self.calls]

    def test_loader_runs_once_per_key(self) -> None:
        first = self.cache.get_or_load("transactions", 1, {"from": date(2024, 1, 1)}, self.loader)
        second = self.cache.get_or_load("transactions", 1, {"from": date(2024, 1, 1)}, self.loader)

        self.assertEqual(first, [1])
        self.assertIs(first, second)
        self.assertEqual(self.calls, 1)

    def test_params_distinguish_keys(self) -> None:
        self.cache.get_or_load("transactions", 1, {"from": date(2024, 1, 1)}, self.loader)
        self.cache.get_or_load("transactions", 1, {"from": date(2024, 2, 1)}, self.loader)
        self.cache.get_or_load("transactions", 2, {"from": date(2024, 1, 1)}, self.loader)

        self.assertEqual(self.calls, 3)

    def test_none_params_are_dropped(self) -> None:
        self.assertEqual(freeze_params({"to": None, "from": 1}), (("from", 1),))
        self.assertEqual(freeze_params(None), ())

    def test_invalidate_is_scoped_to_entity_and_user(self) -> None:
        self.cache.get_or_load("transactions", 1, None, self.loader)
        self.cache.get_or_load("transactions", 1, {"to": 5}, self.loader)
        self.cache.get_or_load("transactions", 2, None, self.loader)
        self.cache.get_or_load("investments", 1, None, self.loader)

        dropped = self.cache.invalidate("transactions", 1)

        self.assertEqual(dropped, 2)
        self.assertNotIn(("transactions", 1, ()), self.cache)
        self.assertIn(("transactions", 2, ()), self.cache)
        self.assertIn(("investments", 1, ()), self.cache)

    def test_invalidate_many_and_clear(self) -> None:
        self.cache.get_or_load("property_addresses", 1, None, self.loader)
        self.cache.get_or_load("electricity_bills", 1, None, self.loader)

        self.cache.invalidate_many(("property_addresses", "electricity_bills"), 1)
        self.assertNotIn(("electricity_bills", 1, ()), self.cache)

        self.cache.get_or_load("transactions", 1, None, self.loader)
        self.cache.clear()
        self.assertNotIn(("transactions", 1, ()), self.cache)

    def test_load_overlapping_invalidation_is_not_stored(self) -> None:
        rows = ["old"]
        loading = threading.Event()
        release = threading.Event()
        results = []

        def slow_loader() -> list:
            snapshot = list(rows)
            loading.set()
            release.wait(timeout=5)
            return snapshot

        reader = threading.Thread(
            target=lambda: results.append(
                self.cache.get_or_load("transactions", 1, None, slow_loader)
            )
        )
        reader.start()
        self.assertTrue(loading.wait(timeout=5))

        rows.append("new")
        self.cache.invalidate("transactions", 1)
        release.set()
        reader.join(timeout=5)

        self.assertEqual(results, [["old"]])
        self.assertNotIn(("transactions", 1, ()), self.cache)
        fresh = self.cache.get_or_load("transactions", 1, None, lambda: list(rows))
        self.assertEqual(fresh, ["old", "new"])


if __name__ == "__main__":
    unittest.main()
