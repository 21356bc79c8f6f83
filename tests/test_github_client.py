"""Tests for the GitHub gateway."""
from unittest.mock import patch, MagicMock

import pytest
import requests

from conftest import make_repo, make_commits, copy_commits, distinct_messages
from scanner.github_client import GitHubClient, ACCOUNT_ACTIVE, ACCOUNT_ELIMINATED, ACCOUNT_UNKNOWN


def _commit_item(sha, message='Add feature', date='2023-01-01T12:00:00Z'):
    return {
        'sha': sha,
        'html_url': f'https://github.com/alice/tool/commit/{sha}',
        'commit': {
            'message': message,
            'author': {'name': 'Alice', 'email': 'alice@example.com', 'date': date},
        },
    }


def _repo_item(full_name, repo_id=1):
    owner, name = full_name.split('/')
    return {
        'id': repo_id,
        'name': name,
        'full_name': full_name,
        'owner': {'login': owner},
        'created_at': '2023-01-01T00:00:00Z',
        'stargazers_count': 42,
    }


def _response(status=200, body=None, links=None):
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    response.json.return_value = body if body is not None else []
    response.links = links or {}
    return response


class TestRepositories:
    def test_get_repository_parses_payload(self):
        with patch('scanner.github_client.make_github_request',
                   return_value=_response(body=_repo_item('alice/tool', 7))):
            repo = GitHubClient().get_repository('alice', 'tool')
        assert repo.full_name == 'alice/tool'
        assert repo.owner == 'alice'
        assert repo.stars == 42
        assert repo.created_at.year == 2023


class TestCommits:
    def test_pages_until_short_page(self):
        pages = [
            _response(body=[_commit_item(f'a{i}') for i in range(100)]),
            _response(body=[_commit_item(f'b{i}') for i in range(30)]),
        ]
        with patch('scanner.github_client.make_github_request', side_effect=pages) as request:
            commits = GitHubClient().get_commits('alice', 'tool')
        assert len(commits) == 130
        assert request.call_count == 2
        assert request.call_args_list[1].kwargs['params']['page'] == 2

    def test_stops_at_limit(self):
        page = _response(body=[_commit_item(f'a{i}') for i in range(100)])
        with patch('scanner.github_client.make_github_request', return_value=page) as request:
            commits = GitHubClient().get_commits('alice', 'tool', limit=50)
        assert len(commits) == 50
        assert request.call_count == 1

    def test_empty_repository_yields_nothing(self):
        with patch('scanner.github_client.make_github_request', return_value=_response(409)):
            assert GitHubClient().get_commits('alice', 'empty') == []

    def test_keeps_first_line_of_message(self):
        page = _response(body=[_commit_item('a1', 'Subject line\n\nBody text')])
        with patch('scanner.github_client.make_github_request', return_value=page):
            commits = GitHubClient().get_commits('alice', 'tool')
        assert commits[0].message == 'Subject line'

    def test_first_commit_follows_last_link(self):
        newest = _response(body=[_commit_item('newest', date='2024-06-01T00:00:00Z')],
                           links={'last': {'url': 'https://api.github.test/commits?page=250'}})
        oldest = _response(body=[_commit_item('oldest', date='2020-01-01T00:00:00Z')])
        with patch('scanner.github_client.make_github_request', side_effect=[newest, oldest]) as request:
            commit = GitHubClient().get_first_commit('alice', 'tool')
        assert commit.sha == 'oldest'
        assert request.call_args_list[1].args[0].endswith('page=250')

    def test_first_commit_single_page(self):
        only = _response(body=[_commit_item('only')])
        with patch('scanner.github_client.make_github_request', return_value=only):
            assert GitHubClient().get_first_commit('alice', 'tool').sha == 'only'

    def test_first_commit_of_empty_repository(self):
        with patch('scanner.github_client.make_github_request', return_value=_response(409)):
            assert GitHubClient().get_first_commit('alice', 'empty') is None


class TestSearch:
    def test_search_repositories_respects_limit(self):
        page = _response(body={'items': [_repo_item(f'user{i}/tool', i) for i in range(5)]})
        with patch('scanner.github_client.make_github_request', return_value=page) as request:
            repos = GitHubClient().search_repositories('tool', limit=3, sort='updated')
        assert [repo.full_name for repo in repos] == ['user0/tool', 'user1/tool', 'user2/tool']
        params = request.call_args.kwargs['params']
        assert params['q'] == 'tool'
        assert params['sort'] == 'updated'

    def test_search_code_returns_repositories(self):
        page = _response(body={'items': [{'repository': _repo_item('bob/copy')}]})
        with patch('scanner.github_client.make_github_request', return_value=page):
            repos = GitHubClient().search_code('"parser changes"')
        assert repos[0].full_name == 'bob/copy'


class TestCommitSearchQueries:
    def test_phrases_first_then_distinctive_messages(self):
        commits = make_commits(distinct_messages(12))
        queries = GitHubClient().build_commit_search_queries(commits)

        assert len(queries) == 10
        assert queries[0] == '"implement feature number" language:markdown OR language:text'
        assert 'implement feature number 0 with' in queries

    def test_generic_messages_not_used_as_terms(self):
        commits = make_commits(['Update the dependency versions for the build'])
        queries = GitHubClient().build_commit_search_queries(commits)
        assert all(not query.startswith('update') for query in queries)

    def test_code_search_failure_falls_back_to_repository_search(self):
        client = GitHubClient()
        commits = make_commits(distinct_messages(3))
        fallback = [make_repo('alice/tool'), make_repo('bob/copy'), make_repo('carol/copy')]

        with patch.object(client, 'search_code', side_effect=requests.HTTPError('422')), \
                patch.object(client, 'search_repositories', return_value=fallback) as search:
            found = client.find_repos_with_matching_commits(commits, exclude_owner='Alice')

        assert [repo.full_name for repo in found] == ['bob/copy', 'carol/copy']
        assert search.call_count == len(client.build_commit_search_queries(commits))

    def test_failing_query_skipped(self):
        client = GitHubClient()
        commits = make_commits(distinct_messages(3))
        with patch.object(client, 'search_code', side_effect=requests.HTTPError('422')), \
                patch.object(client, 'search_repositories', side_effect=requests.HTTPError('403')):
            assert client.find_repos_with_matching_commits(commits) == []

    def test_limit_caps_results(self):
        client = GitHubClient()
        commits = make_commits(distinct_messages(3))
        hits = [make_repo(f'user{i}/copy') for i in range(20)]
        with patch.object(client, 'search_code', return_value=hits):
            found = client.find_repos_with_matching_commits(commits, limit=5)
        assert len(found) == 5


class TestCheckRepoForMatchingCommits:
    def test_counts_normalized_message_overlap(self, fake_client):
        original = make_commits(distinct_messages(10) + ['Initial commit'])
        copied = copy_commits(original[:4])
        for commit in copied:
            commit.message = 'fix: ' + commit.message.upper()
        fake_client.add_repo(make_repo('bob/copy'), copied)

        result = fake_client.check_repo_for_matching_commits('bob', 'copy', original)

        assert result.matches == 4
        assert result.meets_threshold

    def test_trivial_messages_ignored(self, fake_client):
        original = make_commits(['Initial commit', 'update readme with badges', 'wip'])
        fake_client.add_repo(make_repo('bob/copy'), copy_commits(original))

        result = fake_client.check_repo_for_matching_commits('bob', 'copy', original)
        assert result.matches == 0
        assert not result.meets_threshold

    def test_unreadable_candidate_counts_zero(self, fake_client):
        fake_client.add_repo(make_repo('bob/private'), make_commits(distinct_messages(3)))
        fake_client.failing_repos.add('bob/private')

        result = fake_client.check_repo_for_matching_commits(
            'bob', 'private', make_commits(distinct_messages(3)))
        assert result.matches == 0


class TestAccountStatus:
    @pytest.mark.parametrize('status,expected', [
        (200, ACCOUNT_ACTIVE),
        (404, ACCOUNT_ELIMINATED),
        (500, ACCOUNT_UNKNOWN),
    ])
    def test_status_from_response(self, status, expected):
        with patch('scanner.github_client.make_github_request', return_value=_response(status)):
            assert GitHubClient().check_account_status('mallory') == expected

    def test_network_error_is_unknown(self):
        with patch('scanner.github_client.make_github_request',
                   side_effect=requests.ConnectionError('reset')):
            assert GitHubClient().check_account_status('mallory') == ACCOUNT_UNKNOWN
