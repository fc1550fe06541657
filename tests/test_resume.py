"""
Tests for resuming sessions in Claude Code.
"""

import subprocess
import tempfile
from unittest.mock import patch

import pytest

from claude_hybrid_search.resume import ResumeError, resume_session


class TestResumeSession:
    """Test suite for resume_session."""

    @patch("claude_hybrid_search.resume.subprocess.run")
    def test_runs_in_project_directory(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0)

        with tempfile.TemporaryDirectory() as project_dir:
            resume_session("abc-123", project_dir)

        mock_run.assert_called_once_with(["claude", "--resume", "abc-123"], cwd=project_dir)

    @patch("claude_hybrid_search.resume.subprocess.run")
    def test_missing_project_directory_uses_current(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0)

        resume_session("abc-123", "/does/not/exist")

        mock_run.assert_called_once_with(["claude", "--resume", "abc-123"], cwd=None)

    @patch("claude_hybrid_search.resume.subprocess.run")
    def test_nonzero_exit_raises(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=2)

        with pytest.raises(ResumeError, match="status 2"):
            resume_session("abc-123")

    @patch("claude_hybrid_search.resume.subprocess.run", side_effect=FileNotFoundError("claude"))
    def test_missing_binary_raises(self, mock_run):
        with pytest.raises(ResumeError, match="Is Claude Code installed"):
            resume_session("abc-123")

    @patch("claude_hybrid_search.resume.subprocess.run")
    def test_custom_binary(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0)

        resume_session("abc-123", binary="/opt/bin/claude")

        assert mock_run.call_args[0][0] == ["/opt/bin/claude", "--resume", "abc-123"]
