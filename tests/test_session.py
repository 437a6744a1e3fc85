import contextlib
import io
import json
import os
import shutil
import subprocess
import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

# Add scripts/ to path to import modules
sys.path.append(os.path.join(os.path.dirname(__file__), "../scripts"))

from anchorscan import (
    FileEdits,
    ScanConfig,
    ScanConfigError,
    ScanOptions,
    TaskStore,
    TaskStoreError,
    scan_repo,
)
from cli.main import main
from refs import CodeAnchor


class SessionCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.repo = Path(self._tmp.name).resolve()
        self.store = TaskStore(self.repo / ".tasks" / "tasks.json", "PROJ")

    def tearDown(self):
        self._tmp.cleanup()

    def write(self, rel: str, content: str) -> Path:
        path = self.repo / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def read(self, rel: str) -> str:
        return (self.repo / rel).read_text(encoding="utf-8")

    def scan(self, config=None, **kwargs):
        kwargs.setdefault("workers", 2)
        options = ScanOptions(repo=self.repo, **kwargs)
        return scan_repo(options, config or ScanConfig(project="PROJ"), self.store)


class TestCreateAndAnchor(SessionCase):
    def test_new_marker_gets_next_key(self):
        self.store.store["meta"]["next_id"] = 7
        self.write("src/main.rs", "fn main() {}\n// TODO: fix retry logic\n")
        result = self.scan(create_tasks=True)

        self.assertEqual(self.read("src/main.rs"), "fn main() {}\n// TODO(PROJ-7): fix retry logic\n")
        self.assertEqual(result.summary.tasks_created, 1)
        self.assertEqual(result.summary.files_written, 1)
        self.assertEqual(self.store.get_task("PROJ-7")["title"], "fix retry logic")
        self.assertEqual(self.store.code_anchors("PROJ-7"), [CodeAnchor("src/main.rs", 2)])
        [entry] = result.entries
        self.assertEqual(entry.status, "created")
        self.assertEqual(entry.updated_line, "// TODO(PROJ-7): fix retry logic")

    def test_second_scan_changes_nothing(self):
        path = self.write("src/main.rs", "// TODO: fix retry logic\r\nfn main() {}\r\n")
        self.scan(create_tasks=True)
        before = path.read_bytes()
        mtime = os.stat(path).st_mtime_ns

        result = self.scan(create_tasks=True)
        self.assertEqual(path.read_bytes(), before)
        self.assertEqual(os.stat(path).st_mtime_ns, mtime)
        self.assertEqual(result.summary.tasks_created, 0)
        self.assertEqual(result.summary.files_written, 0)
        self.assertEqual(result.summary.anchors_confirmed, 1)
        self.assertIn(b"\r\n", before)

    def test_without_create_nothing_is_written(self):
        self.write("app.py", "# TODO: later\n")
        result = self.scan()
        self.assertEqual(self.read("app.py"), "# TODO: later\n")
        self.assertEqual(result.summary.markers_found, 1)
        self.assertEqual(result.entries[0].message, "task creation disabled")

    def test_attributes_seed_task_and_are_stripped(self):
        self.write("app.py", "# TODO: ship it [priority=high, tags=a b, team=core]\n")
        self.scan(create_tasks=True)
        self.assertEqual(self.read("app.py"), "# TODO(PROJ-1): ship it\n")
        task = self.store.get_task("PROJ-1")
        self.assertEqual(task["title"], "ship it")
        self.assertEqual(task["priority"], "high")
        self.assertEqual(task["tags"], ["a", "b"])
        self.assertEqual(task["custom_fields"], {"team": "core"})

    def test_attributes_kept_when_stripping_disabled(self):
        self.write("app.py", "# TODO: ship it [priority=high]\n")
        self.scan(ScanConfig(project="PROJ", strip_attributes=False), create_tasks=True)
        self.assertEqual(self.read("app.py"), "# TODO(PROJ-1): ship it [priority=high]\n")

    def test_two_markers_on_one_line(self):
        self.write("main.go", "x := 1 // TODO: a FIXME: b\n")
        result = self.scan(create_tasks=True, workers=1)
        self.assertEqual(self.read("main.go"), "x := 1 // TODO(PROJ-1): a FIXME(PROJ-2): b\n")
        self.assertEqual(result.summary.tasks_created, 2)
        self.assertEqual(self.store.code_anchors("PROJ-2"), [CodeAnchor("main.go", 1)])

    def test_key_shaped_text_is_not_a_key(self):
        self.write("app.py", "# TODO: UTF-8 handling\n")
        self.scan(create_tasks=True)
        self.assertEqual(self.read("app.py"), "# TODO(PROJ-1): UTF-8 handling\n")
        self.assertEqual(self.store.get_task("PROJ-1")["title"], "UTF-8 handling")

    def test_symlinked_file_is_edited_through_the_link(self):
        target = self.write("z.js", "// TODO: fix retry logic\n")
        link = self.repo / "a.js"
        try:
            os.symlink(target, link)
        except (OSError, NotImplementedError):
            self.skipTest("symlinks not supported")

        self.scan(create_tasks=True)
        self.assertTrue(link.is_symlink())
        self.assertEqual(self.read("z.js"), "// TODO(PROJ-1): fix retry logic\n")

        second = self.scan(create_tasks=True)
        self.assertTrue(link.is_symlink())
        self.assertEqual(second.summary.tasks_created, 0)
        self.assertFalse(self.store.task_exists("PROJ-2"))
        self.assertEqual(self.store.code_anchors("PROJ-1"), [CodeAnchor("z.js", 1)])

    def test_markers_outside_comments_are_ignored(self):
        self.write("app.py", 'message = "TODO: not a comment"\n')
        result = self.scan(create_tasks=True)
        self.assertEqual(result.summary.markers_found, 0)
        self.assertEqual(self.read("app.py"), 'message = "TODO: not a comment"\n')


class TestExistingKeys(SessionCase):
    def test_existing_key_is_left_alone(self):
        self.store.put_task("PROJ-3", title="known")
        self.write("app.py", "# TODO(PROJ-3): known\n")
        result = self.scan(create_tasks=True)
        self.assertEqual(self.read("app.py"), "# TODO(PROJ-3): known\n")
        self.assertEqual(result.summary.tasks_created, 0)
        self.assertEqual(self.store.code_anchors("PROJ-3"), [CodeAnchor("app.py", 1)])

    def test_mention_anchors_existing_task(self):
        self.store.put_task("PROJ-3", title="known")
        self.write("app.py", "x = 1\n# see PROJ-3 for details\n")
        result = self.scan()
        self.assertEqual(result.summary.mentions_found, 1)
        self.assertEqual(self.store.code_anchors("PROJ-3"), [CodeAnchor("app.py", 2)])

    def test_mentions_disabled(self):
        self.store.put_task("PROJ-3", title="known")
        self.write("app.py", "# see PROJ-3 for details\n")
        self.scan(ScanConfig(project="PROJ", enable_mentions=False))
        self.assertEqual(self.store.code_anchors("PROJ-3"), [])

    def test_stale_key_is_stripped(self):
        self.write("lib.ts", "// TODO(PROJ-9): old thing\n")
        result = self.scan()
        self.assertEqual(self.read("lib.ts"), "// TODO: old thing\n")
        self.assertEqual(result.summary.keys_stripped, 1)

    def test_stale_key_kept_when_stripping_disabled(self):
        self.write("lib.ts", "// TODO(PROJ-9): old thing\n")
        result = self.scan(ScanConfig(project="PROJ", strip_attributes=False))
        self.assertEqual(self.read("lib.ts"), "// TODO(PROJ-9): old thing\n")
        self.assertEqual(result.summary.keys_stripped, 0)

    def test_drift_moves_anchor(self):
        self.write("src/main.rs", "fn main() {}\n// TODO: fix retry logic\n")
        self.scan(create_tasks=True)
        self.assertEqual(self.store.code_anchors("PROJ-1"), [CodeAnchor("src/main.rs", 2)])

        self.write("src/main.rs", "use a;\nuse b;\nuse c;\n" + self.read("src/main.rs"))
        result = self.scan(create_tasks=True)
        self.assertEqual(self.store.code_anchors("PROJ-1"), [CodeAnchor("src/main.rs", 5)])
        self.assertEqual(result.summary.anchors_drifted, 1)
        self.assertEqual(result.summary.tasks_created, 0)

    def test_repeated_key_in_one_file_is_stable(self):
        self.store.put_task("PROJ-7", title="fix")
        self.write("lib.ts", "// TODO(PROJ-7): fix\nlet x = 1;\n// see PROJ-7\n")
        first = self.scan()
        self.assertEqual(self.store.code_anchors("PROJ-7"), [CodeAnchor("lib.ts", 3)])
        self.assertEqual(first.summary.anchors_added, 1)
        store_bytes = (self.repo / ".tasks" / "tasks.json").read_bytes()

        for _ in range(2):
            again = self.scan()
            self.assertEqual(again.summary.anchors_added, 0)
            self.assertEqual(again.summary.anchors_pruned, 0)
            self.assertEqual(again.summary.anchors_drifted, 0)
            self.assertEqual([entry.status for entry in again.entries], ["unchanged", "unchanged"])
        self.assertEqual((self.repo / ".tasks" / "tasks.json").read_bytes(), store_bytes)
        self.assertEqual(self.store.code_anchors("PROJ-7"), [CodeAnchor("lib.ts", 3)])

    def test_same_key_across_files_with_parallel_workers(self):
        self.store.put_task("PROJ-1", title="shared")
        names = [f"pkg/m{idx:02d}.py" for idx in range(16)]
        for name in names:
            self.write(name, "# TODO(PROJ-1): shared\nx = 1\n# see PROJ-1\n")

        first = self.scan(workers=8)
        expected = {CodeAnchor(name, 3) for name in names}
        anchors = self.store.code_anchors("PROJ-1")
        self.assertEqual(len(anchors), len(names))
        self.assertEqual(set(anchors), expected)
        self.assertEqual(first.summary.anchors_added, len(names))

        second = self.scan(workers=8)
        self.assertEqual(set(self.store.code_anchors("PROJ-1")), expected)
        self.assertEqual(second.summary.anchors_added, 0)
        self.assertEqual(second.summary.anchors_pruned, 0)

    def test_reanchor_keeps_one_anchor(self):
        self.store.put_task("PROJ-1", title="shared")
        self.write("a.py", "# TODO(PROJ-1): shared\n")
        self.write("b.py", "# TODO(PROJ-1): shared\n")
        self.scan()
        self.assertEqual(len(self.store.code_anchors("PROJ-1")), 2)

        result = self.scan(reanchor=True, workers=1)
        self.assertEqual(len(self.store.code_anchors("PROJ-1")), 1)
        self.assertEqual(result.summary.anchors_pruned, 1)


class TestFailures(SessionCase):
    def test_write_failure_leaves_task_without_anchor(self):
        self.write("app.py", "# TODO: fix\n")
        with patch.object(FileEdits, "commit", side_effect=OSError("disk full")):
            result = self.scan(create_tasks=True)
        self.assertEqual(self.read("app.py"), "# TODO: fix\n")
        self.assertEqual(result.summary.write_failures, 1)
        self.assertEqual(result.summary.tasks_created, 1)
        [entry] = result.entries
        self.assertEqual(entry.status, "failed")
        self.assertIn("PROJ-1 has no anchor", entry.message)
        self.assertTrue(self.store.task_exists("PROJ-1"))
        self.assertEqual(self.store.code_anchors("PROJ-1"), [])

    def test_task_store_failure_leaves_file_alone(self):
        self.write("app.py", "# TODO: fix\n")
        with patch.object(TaskStore, "create_task", side_effect=TaskStoreError("store locked")):
            result = self.scan(create_tasks=True)
        self.assertEqual(self.read("app.py"), "# TODO: fix\n")
        self.assertEqual(result.summary.unresolved, 1)
        self.assertIn("store locked", result.entries[0].message)

    def test_binary_files_are_skipped(self):
        (self.repo / "blob.c").write_bytes(b"// TODO: x\x00\x01")
        result = self.scan(create_tasks=True)
        self.assertEqual(result.summary.files_skipped, 1)
        self.assertEqual(result.summary.tasks_created, 0)

    def test_invalid_config_raises_before_scanning(self):
        self.write("app.py", "# TODO: fix\n")
        with self.assertRaises(ScanConfigError):
            self.scan(ScanConfig(project="PROJ", insertion_format="[ticket]"), create_tasks=True)
        with self.assertRaises(ScanConfigError):
            self.scan(ScanConfig(project="PROJ", ticket_patterns=["("]), create_tasks=True)
        self.assertEqual(self.read("app.py"), "# TODO: fix\n")

    def test_missing_root_raises(self):
        with self.assertRaises(ValueError):
            self.scan(roots=[self.repo / "nope"])


class TestDryRunAndCancel(SessionCase):
    def test_dry_run_previews_without_writing(self):
        self.write("src/main.rs", "// TODO: fix retry logic\n")
        result = self.scan(create_tasks=True, dry_run=True)
        self.assertEqual(self.read("src/main.rs"), "// TODO: fix retry logic\n")
        self.assertEqual(result.entries[0].updated_line, "// TODO(PROJ-NEW): fix retry logic")
        self.assertTrue(result.summary.dry_run)
        self.assertFalse(self.store.task_exists("PROJ-1"))
        self.assertFalse((self.repo / ".tasks" / "tasks.json").exists())

    def test_cancelled_scan_skips_reconcile(self):
        self.write("a.py", "# TODO: fix\n")
        cancel = threading.Event()
        cancel.set()
        result = self.scan(create_tasks=True, cancel=cancel)
        self.assertTrue(result.summary.cancelled)
        self.assertEqual(result.entries, [])
        self.assertEqual(result.anchor_checks, [])
        self.assertEqual(self.read("a.py"), "# TODO: fix\n")


class TestFilters(SessionCase):
    def test_include_and_ignore_files(self):
        self.write(".gitignore", "build/\n")
        self.write("build/out.py", "# TODO: generated\n")
        self.write("keep.py", "# TODO: keep\n")
        self.write("skip.js", "// TODO: skip\n")
        result = self.scan(include_ext=["py"])
        self.assertEqual([entry.file for entry in result.entries], ["keep.py"])

    def test_scan_root_limits_reconcile(self):
        self.store.put_task("PROJ-1", title="elsewhere")
        self.store.append_code_anchor("PROJ-1", "other/x.py", 4)
        self.write("other/x.py", "\n")
        self.write("src/y.py", "\n")
        result = self.scan(roots=[Path("src")])
        self.assertEqual(result.anchor_checks, [])
        self.assertEqual(self.store.code_anchors("PROJ-1"), [CodeAnchor("other/x.py", 4)])


@unittest.skipUnless(shutil.which("git"), "git not available")
class TestGitRenames(SessionCase):
    def git(self, *args: str) -> None:
        subprocess.run(
            ["git", "-c", "user.name=t", "-c", "user.email=t@example.com", *args],
            cwd=self.repo,
            check=True,
            capture_output=True,
        )

    def test_renamed_file_remaps_anchor(self):
        self.git("init", "-q")
        self.store.put_task("PROJ-1", title="moved")
        self.write("src/old.py", "x = 1\n# TODO(PROJ-1): moved\n")
        self.store.append_code_anchor("PROJ-1", "src/old.py", 2)
        self.git("add", "src/old.py")
        self.git("commit", "-q", "-m", "init")
        self.git("mv", "src/old.py", "src/new.py")

        result = self.scan()
        self.assertEqual(self.store.code_anchors("PROJ-1"), [CodeAnchor("src/new.py", 2)])
        self.assertEqual(result.summary.anchors_renamed, 1)

    def test_modified_only(self):
        self.git("init", "-q")
        self.write("clean.py", "# TODO: committed\n")
        self.git("add", "clean.py")
        self.git("commit", "-q", "-m", "init")
        self.write("fresh.py", "# TODO: new work\n")

        result = self.scan(modified_only=True)
        self.assertEqual([entry.file for entry in result.entries], ["fresh.py"])


class TestCli(unittest.TestCase):
    def run_main(self, argv):
        out = io.StringIO()
        err = io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main(argv)
        return code, out.getvalue(), err.getvalue()

    def test_scan_json_and_anchors(self):
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp).resolve()
            (repo / "app.py").write_text("# TODO: wire it up\n", encoding="utf-8")
            code, out, _ = self.run_main(
                ["--repo", str(repo), "--quiet", "scan", "--create", "--format", "json", "--project", "proj"]
            )
            self.assertEqual(code, 0)
            payload = json.loads(out)
            self.assertEqual(payload["summary"]["tasks_created"], 1)
            self.assertEqual(payload["entries"][0]["task_key"], "PROJ-1")
            self.assertEqual((repo / "app.py").read_text(encoding="utf-8"), "# TODO(PROJ-1): wire it up\n")

            code, out, _ = self.run_main(["--repo", str(repo), "anchors", "--format", "json"])
            self.assertEqual(code, 0)
            self.assertEqual(json.loads(out), {"PROJ-1": ["app.py#L1"]})

            code, _, err = self.run_main(["--repo", str(repo), "anchors", "PROJ-404"])
            self.assertEqual(code, 2)
            self.assertIn("PROJ-404", json.loads(err)["error"])

    def test_text_output(self):
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp).resolve()
            (repo / "app.py").write_text("# FIXME: later\n", encoding="utf-8")
            code, out, _ = self.run_main(["--repo", str(repo), "--quiet", "scan", "--dry-run", "--create"])
            self.assertEqual(code, 0)
            self.assertIn("MARKERS_FOUND: 1", out)
            self.assertIn("DRY_RUN: True", out)

    def test_text_output_truncates_long_lines(self):
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp).resolve()
            long_line = "# FIXME: " + "x" * 400
            (repo / "app.py").write_text(long_line + "\n", encoding="utf-8")
            code, out, _ = self.run_main(["--repo", str(repo), "--quiet", "scan", "--dry-run", "--create"])
            self.assertEqual(code, 0)
            self.assertIn("# FIXME(", out)
            self.assertIn("...", out)
            self.assertNotIn("x" * 400, out)

    def test_bad_config_fails(self):
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp).resolve()
            (repo / ".lotar.json").write_text(json.dumps({"scan": {"ticket_patterns": 5}}), encoding="utf-8")
            code, out, err = self.run_main(["--repo", str(repo), "--quiet", "scan"])
            self.assertEqual(code, 2)
            self.assertEqual(out, "")
            self.assertIn("ticket_patterns", json.loads(err)["error"])


if __name__ == "__main__":
    unittest.main()
