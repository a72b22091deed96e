#!/usr/bin/env python3
"""Tests for the context detector.

Run: python3 -m pytest tests/core/test_stack_detector.py -v
"""
import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402

from _infra_models import Stack  # noqa: E402
from _stack_detector import detect, recommend_plugins  # noqa: E402

MIXED_TREE = {
    "infra/main.tf": 'provider "aws" {\n  region = "us-east-1"\n}\n',
    "infra/backend.tf": 'terraform {\n  backend "s3" {}\n}\n',
    "infra/gcp.tf": 'resource "google_compute_network" "vpc" {}\n',
    "Dockerfile": "FROM python:3.12\n",
    ".github/workflows/ci.yml": "on: push\njobs: {}\n",
    "deploy/app.yaml": "apiVersion: apps/v1\nkind: Deployment\nmetadata:\n  name: app\n",
    "charts/app/Chart.yaml": "apiVersion: v2\nname: app\n",
    "playbooks/site.yml": "- hosts: all\n",
    "monitoring/prometheus.yml": "global: {}\n",
    ".trivyignore": "",
}


class TestDetect(unittest.TestCase):

    def setUp(self):
        self.root = tempfile.mkdtemp(prefix="infraguard_detect_")
        self.config = _bootstrap.default_config()

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_readme_only_tree_is_empty(self):
        _bootstrap.write_tree(self.root, {"README.md": "# Hello\n"})
        context = detect(self.root, config=self.config)
        self.assertEqual(context.detected_stacks, frozenset())
        self.assertTrue(context.populated)
        self.assertFalse(context.incomplete)

    def test_empty_tree(self):
        self.assertEqual(detect(self.root, config=self.config).detected_stacks, frozenset())

    def test_mixed_tree_records_every_stack(self):
        _bootstrap.write_tree(self.root, MIXED_TREE)
        context = detect(self.root, "s1", config=self.config)
        expected = {
            Stack.TERRAFORM,
            Stack.AWS,
            Stack.GCP,
            Stack.DOCKER,
            Stack.GITHUB_ACTIONS,
            Stack.KUBERNETES,
            Stack.HELM,
            Stack.ANSIBLE,
        }
        self.assertEqual(context.detected_stacks, frozenset(expected))
        self.assertEqual(context.session_id, "s1")
        self.assertEqual(context.tooling["state_backend"], "s3")
        self.assertEqual(context.tooling["monitoring"], ["Prometheus"])
        self.assertEqual(context.tooling["security_tools"], ["Trivy"])
        self.assertIn("terraform-patterns", context.recommendations)
        self.assertIn("secret-management", context.recommendations)

    def test_idempotent(self):
        _bootstrap.write_tree(self.root, MIXED_TREE)
        first = detect(self.root, config=self.config)
        second = detect(self.root, config=self.config)
        self.assertEqual(first.detected_stacks, second.detected_stacks)
        self.assertEqual(first.tooling, second.tooling)

    def test_single_markers(self):
        cases = {
            ".gitlab-ci.yml": ("stages: [build]\n", Stack.GITLAB_CI),
            "Jenkinsfile": ("pipeline {}\n", Stack.JENKINS),
            "cdk.json": ('{"app": "npx ts-node bin/app.ts"}\n', Stack.CLOUDFORMATION),
            "template.yaml": ("AWSTemplateFormatVersion: '2010-09-09'\n", Stack.CLOUDFORMATION),
            "ansible.cfg": ("[defaults]\n", Stack.ANSIBLE),
            "docker-compose.yml": ("services: {}\n", Stack.DOCKER),
            "Pulumi.yaml": ("name: app\nruntime: python\n", Stack.PULUMI),
            "network.tf": ('resource "azurerm_resource_group" "rg" {}\n', Stack.AZURE),
            "k8s/notes.yaml": ("replicas: 2\n", Stack.KUBERNETES),
        }
        for name, (content, stack) in cases.items():
            with self.subTest(marker=name):
                root = tempfile.mkdtemp(prefix="infraguard_marker_")
                try:
                    _bootstrap.write_tree(root, {name: content})
                    self.assertIn(stack, detect(root, config=self.config).detected_stacks)
                finally:
                    shutil.rmtree(root, ignore_errors=True)

    def test_skip_dirs_ignored(self):
        _bootstrap.write_tree(
            self.root,
            {
                "node_modules/pkg/main.tf": "",
                ".terraform/modules/x/main.tf": "",
                ".git/hooks/Dockerfile": "",
            },
        )
        self.assertEqual(detect(self.root, config=self.config).detected_stacks, frozenset())

    def test_depth_cap(self):
        _bootstrap.write_tree(self.root, {"a/b/c/d/e/f/main.tf": ""})
        self.assertEqual(detect(self.root, config=self.config).detected_stacks, frozenset())
        config = dict(self.config, detector={"maxDepth": 10})
        self.assertIn(Stack.TERRAFORM, detect(self.root, config=config).detected_stacks)

    @unittest.skipIf(os.name == "nt" or os.geteuid() == 0, "permission bits not enforced")
    def test_unreadable_directory_skipped(self):
        _bootstrap.write_tree(self.root, {"ok/main.tf": "", "locked/Dockerfile": ""})
        locked = os.path.join(self.root, "locked")
        os.chmod(locked, 0)
        try:
            context = detect(self.root, config=self.config)
        finally:
            os.chmod(locked, 0o755)
        self.assertEqual(context.detected_stacks, frozenset({Stack.TERRAFORM}))

    def test_expired_budget_marks_incomplete(self):
        _bootstrap.write_tree(self.root, {"infra/main.tf": ""})
        config = dict(self.config, detector={"timeoutSeconds": 1e-9})
        self.assertTrue(detect(self.root, config=config).incomplete)


class TestRecommendations(unittest.TestCase):

    def test_iac_adds_security_plugins(self):
        recommended = recommend_plugins({Stack.TERRAFORM})
        self.assertEqual(
            recommended, ["infrastructure-security", "secret-management", "terraform-patterns"]
        )

    def test_monitoring(self):
        self.assertEqual(recommend_plugins(set(), has_monitoring=True), ["monitoring-observability"])

    def test_nothing(self):
        self.assertEqual(recommend_plugins(set()), [])


if __name__ == "__main__":
    unittest.main()
