# test_gitlab_api.py
import unittest
import logging
from datetime import date
from unittest.mock import MagicMock

import requests

from config import GlobalConfig
from data_sources.gitlab_api import GitLabApiClient, encode_path, has_next_page
from exceptions import NetworkError
from testing_fakes import make_connection

logging.basicConfig(level=logging.INFO)


def make_response(status=200, json_data=None, headers=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    response.headers = headers or {}
    response.text = text
    if json_data is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = json_data
    return response


class TestGitLabApiClient(unittest.TestCase):

    def setUp(self):
        self.config = GlobalConfig()
        self.config.MAX_RETRIES = 3
        self.config.INITIAL_BACKOFF_MS = 1000
        self.config.PAGE_SIZE = 100

        self.session = MagicMock()
        self.sleep = MagicMock()
        self.client = GitLabApiClient(self.config, session=self.session, sleep=self.sleep)
        self.connection = make_connection("c1", server_url="https://gitlab.example.com/")

    def test_pagination_concatenates_pages(self):
        print("\n>>> 测试分页拼接...")
        self.session.get.side_effect = [
            make_response(
                json_data=[{"id": 1, "name": "a"}, {"id": 2, "name": "b"}],
                headers={"Link": '<https://gitlab.example.com/api/v4/projects?page=2>; rel="next"'},
            ),
            make_response(json_data=[{"id": 3, "name": "c"}]),
        ]

        projects = self.client.list_projects(self.connection)

        self.assertEqual([p.id for p in projects], ["1", "2", "3"], "❌ 分页结果顺序错误")
        pages = [call.kwargs["params"]["page"] for call in self.session.get.call_args_list]
        self.assertEqual(pages, [1, 2])
        first_call = self.session.get.call_args_list[0]
        self.assertEqual(first_call.args[0], "https://gitlab.example.com/api/v4/projects")
        self.assertEqual(first_call.kwargs["headers"], {"PRIVATE-TOKEN": "token-c1"})
        self.assertEqual(first_call.kwargs["params"]["membership"], "true")
        print("✅ 分页测试通过")

    def test_non_2xx_page_stops_with_partial_results(self):
        self.session.get.side_effect = [
            make_response(json_data=[{"id": 1}], headers={"Link": 'rel="next"'}),
            make_response(status=500),
        ]
        projects = self.client.list_projects(self.connection)
        self.assertEqual([p.id for p in projects], ["1"])

    def test_rate_limit_waits_retry_after_without_using_budget(self):
        print("\n>>> 测试 429 限流...")
        self.session.get.side_effect = [
            make_response(status=429, headers={"Retry-After": "2"}),
            requests.ConnectionError("reset"),
            requests.ConnectionError("reset"),
            make_response(json_data={"username": "alice", "name": "Alice", "email": "a@x.com"}),
        ]

        identity = self.client.get_current_user(self.connection)

        self.assertIsNotNone(identity, "❌ 429 不应计入重试次数")
        self.assertEqual(identity.username, "alice")
        self.assertEqual(self.sleep.call_args_list[0].args[0], 2.0)
        self.assertEqual(self.session.get.call_count, 4)
        print("✅ 限流测试通过")

    def test_rate_limit_without_header_uses_backoff(self):
        self.session.get.side_effect = [
            make_response(status=429),
            make_response(status=429),
            make_response(json_data={"username": "alice"}),
        ]
        self.client.get_current_user(self.connection)
        waits = [call.args[0] for call in self.sleep.call_args_list]
        self.assertEqual(waits, [1.0, 2.0])

    def test_transport_failures_exhaust_retries(self):
        print("\n>>> 测试传输层重试...")
        self.session.get.side_effect = requests.Timeout("slow")

        with self.assertRaises(NetworkError) as ctx:
            self.client.get_current_user(self.connection)

        self.assertEqual(ctx.exception.attempts, 3)
        self.assertEqual(self.session.get.call_count, 3)
        waits = [call.args[0] for call in self.sleep.call_args_list]
        self.assertEqual(waits, [1.0, 2.0], "❌ 退避时间应指数增长")
        print("✅ 重试测试通过")

    def test_auth_failure_returns_none(self):
        self.session.get.return_value = make_response(status=401)
        self.assertIsNone(self.client.validate_identity("gitlab.example.com", "bad"))
        self.assertEqual(self.session.get.call_count, 1, "❌ 非 2xx 不应重试")
        self.sleep.assert_not_called()

    def test_list_commits_params_and_annotation(self):
        self.session.get.return_value = make_response(
            json_data=[{"id": "abcdef0123", "short_id": "abcdef01", "message": "feat: x"}]
        )

        commits = self.client.list_commits(
            self.connection, "team/api", date(2024, 3, 4), date(2024, 3, 10)
        )

        self.assertEqual(len(commits), 1)
        self.assertEqual(commits[0].project_id, "team/api")
        self.assertEqual(commits[0].connection_id, "c1")
        call = self.session.get.call_args
        self.assertTrue(call.args[0].endswith("/projects/team%2Fapi/repository/commits"))
        self.assertEqual(call.kwargs["params"]["since"], "2024-03-04T00:00:00Z")
        self.assertEqual(call.kwargs["params"]["until"], "2024-03-10T23:59:59Z")

    def test_malformed_json_returns_empty(self):
        self.session.get.return_value = make_response(json_data=None)
        self.assertEqual(
            self.client.list_commits(self.connection, "1", date(2024, 1, 1), date(2024, 1, 2)),
            [],
        )

    def test_non_object_records_are_skipped(self):
        print("\n>>> 测试跳过非对象记录...")
        self.session.get.return_value = make_response(
            json_data=["oops", None, {"id": "abc123", "message": "fix: y", "stats": [1, 2]}]
        )

        commits = self.client.list_commits(
            self.connection, "1", date(2024, 3, 4), date(2024, 3, 10)
        )

        self.assertEqual([c.id for c in commits], ["abc123"], "❌ 非对象记录应被跳过")
        self.assertIsNone(commits[0].insertions)
        projects_response = make_response(json_data=[42, {"id": 7, "name": "api"}])
        self.session.get.return_value = projects_response
        self.assertEqual([p.id for p in self.client.list_projects(self.connection)], ["7"])
        print("✅ 非对象记录测试通过")

    def test_commit_detail_with_odd_fields(self):
        self.session.get.return_value = make_response(
            json_data={"id": "abc", "message": "feat: x", "stats": "n/a"}
        )
        detail = self.client.fetch_commit_detail(self.connection, "1", "abc")
        self.assertEqual(detail.id, "abc")
        self.assertIsNone(detail.deletions, "❌ stats 不是对象时应视为没有统计")

        self.session.get.return_value = make_response(
            json_data={"id": "abc", "parent_ids": 5}
        )
        self.assertIsNone(self.client.fetch_commit_detail(self.connection, "1", "abc"))

    def test_fetch_commit_diff_returns_text(self):
        self.session.get.return_value = make_response(text="diff --git a/x b/x", json_data=[])
        diff = self.client.fetch_commit_diff(self.connection, "1", "abc")
        self.assertEqual(diff, "diff --git a/x b/x")
        self.assertTrue(self.session.get.call_args.args[0].endswith("/commits/abc/diff"))

    def test_helpers(self):
        self.assertEqual(encode_path("group/sub project"), "group%2Fsub%20project")
        self.assertTrue(has_next_page(make_response(headers={"Link": '<u>; rel="next"'})))
        self.assertFalse(has_next_page(make_response(headers={"Link": '<u>; rel="last"'})))
        self.assertFalse(has_next_page(make_response()))


if __name__ == "__main__":
    unittest.main()
