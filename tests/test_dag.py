"""Tests for job graph construction and ordering."""

import pytest

from shipline.dag import ancestors, build_dag, descendants, execution_order, plan
from shipline.dsl import job, sh
from shipline.errors import GraphError


def _job(name, needs=None):
    return job(name, sh("noop", "true"), needs=needs)


class TestBuildDag:
    def test_edges_and_indegrees(self):
        adj, indeg = build_dag([_job("build"), _job("deploy", ["build"])])
        assert adj == {"build": {"deploy"}, "deploy": set()}
        assert indeg == {"build": 0, "deploy": 1}

    def test_missing_dependency(self):
        with pytest.raises(GraphError, match="missing job 'nope'"):
            build_dag([_job("deploy", ["nope"])])

    def test_cycle(self):
        with pytest.raises(GraphError, match="cycle"):
            build_dag([_job("a", ["b"]), _job("b", ["a"])])

    def test_self_dependency(self):
        with pytest.raises(GraphError):
            build_dag([_job("a", ["a"])])

    def test_duplicate_names(self):
        with pytest.raises(GraphError, match="Duplicate"):
            build_dag([_job("a"), _job("a")])


class TestOrdering:
    def test_stages_keep_declaration_order(self):
        jobs = [_job("lint"), _job("test"), _job("build", ["lint", "test"]), _job("deploy", ["build"])]
        assert plan(jobs) == [["lint", "test"], ["build"], ["deploy"]]

    def test_dependency_always_precedes_dependent(self):
        jobs = [_job("deploy", ["build"]), _job("docs"), _job("build")]
        order = execution_order(jobs)
        assert order.index("build") < order.index("deploy")
        assert set(order) == {"deploy", "docs", "build"}


def test_ancestors_are_transitive():
    jobs = [_job("a"), _job("b", ["a"]), _job("c", ["b"]), _job("d")]
    anc = ancestors(jobs)
    assert anc["c"] == {"a", "b"}
    assert anc["d"] == set()


def test_descendants():
    adj, _ = build_dag([_job("a"), _job("b", ["a"]), _job("c", ["b"]), _job("d")])
    assert descendants(adj, "a") == {"b", "c"}
