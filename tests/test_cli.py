import json

import pytest

from facepeople import cli
from facepeople.config import PipelineConfig, parse_args


def run(capsys, db_path, *argv):
    code = cli.main(["--db", str(db_path), "--log-level", "ERROR", *argv])
    return code, json.loads(capsys.readouterr().out)


class TestParseArgs:

    def test_defaults(self, tmp_path):
        config, args = parse_args(["--db", str(tmp_path / "f.sqlite"), "stats"])
        assert isinstance(config, PipelineConfig)
        assert config.model_name == "buffalo_l"
        assert config.match_threshold == 0.5
        assert config.cannot_link_same_photo is False
        assert config.use_gpu is False
        assert args.command == "stats"

    def test_options_and_int_lists(self, tmp_path):
        config, args = parse_args([
            "--db", str(tmp_path / "f.sqlite"), "--threshold", "0.6", "--cannot-link-same-photo",
            "--max-faces", "3", "assign", "4", "10", "11",
        ])
        assert config.match_threshold == 0.6
        assert config.cannot_link_same_photo is True
        assert config.max_faces == 3
        assert args.person_id == 4
        assert args.face_ids == [10, 11]

    @pytest.mark.parametrize("argv", [
        ["--threshold", "1.5", "match"],
        ["--min-confidence", "-0.1", "match"],
        ["--max-faces", "0", "match"],
        ["detect", "1", "two"],
        ["split", "1", "2"],
        ["split", "1", "2", "--name", "A", "--to", "3"],
    ])
    def test_invalid_arguments_exit(self, tmp_path, argv):
        with pytest.raises(SystemExit):
            parse_args(["--db", str(tmp_path / "f.sqlite"), *argv])


class TestMain:

    def test_people_add_list_and_conflict(self, tmp_path, capsys):
        db_path = tmp_path / "f.sqlite"
        code, person = run(capsys, db_path, "people", "add", "Alice")
        assert code == 0
        assert person["name"] == "Alice"

        code, error = run(capsys, db_path, "people", "add", " alice")
        assert code == 1
        assert error["error"] == "ExistingPersonConflict"
        assert error["person_id"] == person["id"]

        code, people = run(capsys, db_path, "people", "list", "--search", "ali")
        assert code == 0
        assert [p["id"] for p in people] == [person["id"]]

    def test_stats_on_empty_database(self, tmp_path, capsys):
        code, stats = run(capsys, tmp_path / "f.sqlite", "stats")
        assert code == 0
        assert stats["faces"]["total_faces"] == 0
        assert stats["people"]["total_persons"] == 0
        assert stats["jobs"]["total"] == 0

    def test_merge_errors_are_reported(self, tmp_path, capsys):
        code, error = run(capsys, tmp_path / "f.sqlite", "merge", "1", "1")
        assert code == 1
        assert error["error"] == "InvalidMergeRequest"

    def test_queue_status_without_jobs(self, tmp_path, capsys):
        code, report = run(capsys, tmp_path / "f.sqlite", "queue", "status")
        assert code == 0
        assert report["job_id"] is None
        assert report["stalled"] is False
