# test_orchestrator.py
import unittest
import logging
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime

from cache.commit_cache import CommitCache
from cache.project_cache import DiskProjectCache
from config import GlobalConfig
from context import SessionContext
from data_sources.mapper import GitLabModelMapper
from instance_registry import InstanceRegistry
from models import CommitRecord, Project, RemoteCommit
from orchestrator import CommitAggregator, is_commit_by_current_user
from project_service import ProjectService
from testing_fakes import (
    FakeRemote,
    InMemoryCommitStore,
    InMemoryConfigStore,
    make_connection,
    make_remote_commit,
)

logging.basicConfig(level=logging.INFO)

WEEK_START = date(2024, 3, 4)
WEEK_END = date(2024, 3, 10)


class AggregatorTestCase(unittest.TestCase):
    """组装一个全部由假实现构成的 SessionContext"""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.executor = ThreadPoolExecutor(max_workers=4)
        self.now = [1000.0]

        self.config_store = InMemoryConfigStore(
            [
                make_connection("c1", name="Work", user_name="alice", user_email="alice@x.com"),
                make_connection("c2", name="Home"),
            ]
        )
        self.remote = FakeRemote()
        self.commit_store = InMemoryCommitStore()
        self.registry = InstanceRegistry(self.config_store, self.remote, self.executor)
        self.commit_cache = CommitCache(ttl_seconds=3600, clock=lambda: self.now[0])
        project_cache = DiskProjectCache(self.tmp.name)
        self.project_service = ProjectService(
            self.registry, self.remote, project_cache, self.config_store, self.executor
        )
        self.context = SessionContext(
            global_config=GlobalConfig(),
            config_store=self.config_store,
            remote=self.remote,
            mapper=GitLabModelMapper(),
            registry=self.registry,
            project_cache=project_cache,
            commit_cache=self.commit_cache,
            project_service=self.project_service,
            commit_store=self.commit_store,
            executor=self.executor,
        )
        self.aggregator = CommitAggregator(self.context)

    def tearDown(self):
        self.executor.shutdown(wait=True)
        self.tmp.cleanup()

    def make_project(self, project_id: str, connection_id: str = "c1"):
        return Project(
            id=project_id,
            connection_id=connection_id,
            name=f"p{project_id}",
            path_with_namespace=f"team/p{project_id}",
        )


class TestWeeklyAggregation(AggregatorTestCase):

    def test_merged_result_is_sorted_descending(self):
        print("\n>>> 测试合并排序...")
        self.remote.commits["1"] = [
            make_remote_commit("a1", "2024-03-05T09:00:00Z"),
            make_remote_commit("a2", "2024-03-08T09:00:00Z"),
        ]
        self.remote.commits["2"] = [
            make_remote_commit("b1", "2024-03-06T09:00:00Z"),
            make_remote_commit("b2", "2024-03-09T09:00:00Z"),
        ]
        # 让第一个项目最后完成
        self.remote.delays["1"] = 0.05

        commits = self.aggregator.get_commits_for_week(
            WEEK_START, WEEK_END, [self.make_project("1"), self.make_project("2")]
        )

        self.assertEqual([c.hash for c in commits], ["b2", "a2", "b1", "a1"])
        print("✅ 合并排序测试通过")

    def test_equal_timestamps_keep_submission_order(self):
        self.remote.commits["1"] = [make_remote_commit("a1", "2024-03-05T09:00:00Z")]
        self.remote.commits["2"] = [make_remote_commit("b1", "2024-03-05T09:00:00Z")]
        self.remote.delays["1"] = 0.05

        commits = self.aggregator.get_commits_for_week(
            WEEK_START, WEEK_END, [self.make_project("1"), self.make_project("2")]
        )
        self.assertEqual([c.hash for c in commits], ["a1", "b1"])

    def test_one_failing_project_does_not_break_batch(self):
        print("\n>>> 测试单个项目失败...")
        self.remote.commits["1"] = [make_remote_commit("a1", "2024-03-05T09:00:00Z")]
        self.remote.commits["3"] = [make_remote_commit("c1", "2024-03-07T09:00:00Z")]
        self.remote.failing.add("2")

        commits = self.aggregator.get_commits_for_week(
            WEEK_START,
            WEEK_END,
            [self.make_project("1"), self.make_project("2"), self.make_project("3")],
        )

        self.assertEqual([c.hash for c in commits], ["c1", "a1"])
        print("✅ 单项目失败测试通过")

    def test_empty_selection(self):
        self.assertEqual(self.aggregator.get_commits_for_week(WEEK_START, WEEK_END, []), [])
        self.assertNotIn("list_commits", self.remote.calls)

    def test_defaults_to_selected_projects(self):
        self.remote.projects["c1"] = [self.make_project("1")]
        self.remote.commits["1"] = [make_remote_commit("a1", "2024-03-05T09:00:00Z")]
        self.config_store.selected_ids = ["c1:1"]

        commits = self.aggregator.get_commits_for_week(WEEK_START, WEEK_END)
        self.assertEqual([c.hash for c in commits], ["a1"])


class TestCommitCaching(AggregatorTestCase):

    def test_single_fetch_within_ttl(self):
        project = self.make_project("1")
        self.remote.commits["1"] = [make_remote_commit("a1", "2024-03-05T09:00:00Z")]

        self.aggregator.get_commits_for_project(project, WEEK_START, WEEK_END)
        self.now[0] += 1800
        cached = self.aggregator.get_commits_for_project(project, WEEK_START, WEEK_END)

        self.assertEqual(self.remote.calls["list_commits"], 1, "❌ TTL 内不应重复请求")
        self.assertEqual([c.hash for c in cached], ["a1"])

    def test_refetch_after_ttl(self):
        project = self.make_project("1")
        self.aggregator.get_commits_for_project(project, WEEK_START, WEEK_END)
        self.now[0] += 3601
        self.aggregator.get_commits_for_project(project, WEEK_START, WEEK_END)
        self.assertEqual(self.remote.calls["list_commits"], 2)

    def test_cache_hit_is_filtered_by_day_range(self):
        project = self.make_project("1")
        self.remote.commits["1"] = [
            make_remote_commit("a1", "2024-03-05T09:00:00Z"),
            make_remote_commit("a2", "2024-03-10T23:30:00Z"),
        ]
        self.aggregator.get_commits_for_project(project, WEEK_START, WEEK_END)

        narrowed = self.aggregator.get_commits_for_project(project, date(2024, 3, 10), date(2024, 3, 10))
        self.assertEqual([c.hash for c in narrowed], ["a2"])

    def test_unknown_connection_returns_empty(self):
        self.assertEqual(
            self.aggregator.get_commits_for_project(
                self.make_project("1", connection_id="gone"), WEEK_START, WEEK_END
            ),
            [],
        )

    def test_clear_commit_cache_for_connection(self):
        self.aggregator.get_commits_for_project(self.make_project("1"), WEEK_START, WEEK_END)
        self.aggregator.get_commits_for_project(self.make_project("9", "c2"), WEEK_START, WEEK_END)

        self.assertEqual(self.aggregator.clear_commit_cache_for_connection("c1"), 1)
        self.assertEqual(len(self.commit_cache), 1)

        self.aggregator.clear_commit_cache()
        self.assertEqual(len(self.commit_cache), 0)


class TestAuthorFilter(AggregatorTestCase):

    def test_username_or_email_match(self):
        print("\n>>> 测试作者过滤 (OR 语义)...")
        self.remote.commits["1"] = [
            make_remote_commit("m1", "2024-03-05T09:00:00Z", author="alice", email="other@x.com"),
            make_remote_commit("m2", "2024-03-05T10:00:00Z", author="bob", email="alice@x.com"),
            make_remote_commit("m3", "2024-03-05T11:00:00Z", author="bob", email="bob@x.com"),
            make_remote_commit("m4", "2024-03-05T12:00:00Z", author="alice", parents=2),
        ]

        mine = self.aggregator.get_my_commits_for_week(WEEK_START, WEEK_END, [self.make_project("1")])

        self.assertEqual([c.hash for c in mine], ["m2", "m1"])
        print("✅ 作者过滤测试通过")

    def test_connection_without_identity_passes_all(self):
        self.remote.commits["9"] = [
            make_remote_commit("h1", "2024-03-05T09:00:00Z", author="anyone", email="x@y.z"),
            make_remote_commit("h2", "2024-03-05T10:00:00Z", author="anyone", parents=2),
        ]
        mine = self.aggregator.get_my_commits_for_week(
            WEEK_START, WEEK_END, [self.make_project("9", "c2")]
        )
        self.assertEqual([c.hash for c in mine], ["h1"], "❌ 合并提交始终应被排除")

    def test_unknown_connection_is_excluded(self):
        commit = CommitRecord(
            hash="x", message="", author="alice", author_email="alice@x.com",
            timestamp=datetime(2024, 3, 5), connection_id="gone",
        )
        connections = {c.id: c for c in self.registry.get_connections()}
        self.assertFalse(is_commit_by_current_user(commit, connections))


class TestOfflineAndDetails(AggregatorTestCase):

    def make_record(self, sha, when, project_id="1", author="alice", is_merge=False):
        return CommitRecord(
            hash=sha,
            message="feat: x",
            author=author,
            author_email=f"{author}@x.com",
            timestamp=when,
            is_merge=is_merge,
            connection_id="c1",
            project_id=project_id,
        )

    def test_from_cache_uses_only_commit_store(self):
        print("\n>>> 测试离线查询...")
        self.commit_store.commits = [
            self.make_record("s1", datetime(2024, 3, 5, 9)),
            self.make_record("s2", datetime(2024, 3, 10, 23, 59, 59)),
            self.make_record("s3", datetime(2024, 3, 11, 0, 0)),
            self.make_record("s4", datetime(2024, 3, 6), project_id="2"),
            self.make_record("s5", datetime(2024, 3, 6), author="bob"),
            self.make_record("s6", datetime(2024, 3, 6), is_merge=True),
        ]

        commits = self.aggregator.get_my_commits_for_week_from_cache(
            WEEK_START, WEEK_END, [self.make_project("1")]
        )

        self.assertEqual([c.hash for c in commits], ["s2", "s1"])
        self.assertEqual(self.remote.calls, {}, "❌ 离线查询不应访问网络")
        print("✅ 离线查询测试通过")

    def test_save_commits_deduplicates(self):
        record = self.make_record("s1", datetime(2024, 3, 5, 9))
        self.assertEqual(self.aggregator.save_commits([record]), 1)
        self.assertEqual(self.aggregator.save_commits([record]), 0)

    def test_details_fill_stats_and_tolerate_failures(self):
        self.remote.commits["1"] = [
            make_remote_commit("d1", "2024-03-05T09:00:00Z"),
            make_remote_commit("d2", "2024-03-06T09:00:00Z"),
        ]
        self.remote.details["d1"] = RemoteCommit(id="d1", short_id="d1", insertions=10, deletions=2)
        self.remote.failing.add("d2")

        commits = self.aggregator.get_commits_with_details(
            self.make_project("1"), WEEK_START, WEEK_END
        )

        by_hash = {c.hash: c for c in commits}
        self.assertEqual((by_hash["d1"].insertions, by_hash["d1"].deletions), (10, 2))
        self.assertEqual((by_hash["d2"].insertions, by_hash["d2"].deletions), (0, 0))

    def test_fetch_commit_diff(self):
        record = self.make_record("d1", datetime(2024, 3, 5))
        self.assertEqual(
            self.aggregator.fetch_commit_diff(self.make_project("1"), record), "diff --git a/d1"
        )


class TestLifecycle(AggregatorTestCase):

    def test_initialize_is_idempotent(self):
        self.remote.projects["c1"] = [self.make_project("1")]
        future = self.aggregator.initialize()
        self.assertIs(self.aggregator.initialize(), future)
        future.result(timeout=5)

        self.assertEqual(len(self.project_service.get_all_projects()), 1)

    def test_rename_updates_projects_and_drops_commit_cache(self):
        self.remote.projects["c1"] = [self.make_project("1")]
        self.project_service.refresh_projects_for_connection("c1")
        self.aggregator.get_commits_for_project(self.make_project("1"), WEEK_START, WEEK_END)

        renamed = self.registry.get_connection("c1")
        renamed.name = "Renamed"
        self.assertTrue(self.aggregator.apply_connection_update(renamed))

        project = self.project_service.get_projects_for_connection("c1")[0]
        self.assertEqual(project.display_name, "Renamed / team/p1")
        self.assertEqual(len(self.commit_cache), 0)

    def test_refresh_cache_forces_project_reload(self):
        self.remote.projects["c1"] = [self.make_project("1")]
        self.project_service.refresh_projects_for_connection("c1")
        self.aggregator.refresh_cache()
        self.assertEqual(self.remote.calls["list_projects"], 3)


if __name__ == "__main__":
    unittest.main()
