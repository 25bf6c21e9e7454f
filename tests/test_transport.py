import io
import os
import shlex
import subprocess
import sys
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

try:
    import httpx

    from ghostlog.main import CodecConfig, IncompleteSetError, TransportError, cli, ghostlog
    from ghostlog.transport import (
        DirectoryStore,
        GatedStore,
        HttpStore,
        MemoryStore,
        Pacer,
        SharedSecretGate,
        TransportAdapter,
        open_store,
    )
except ModuleNotFoundError as exc:  # pragma: no cover - dependency missing
    ghostlog = None
    _IMPORT_ERROR = exc
else:
    _IMPORT_ERROR = None


class _RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class _FlakyStore(MemoryStore if ghostlog else object):
    """Fails the n-th put and counts every attempt."""

    def __init__(self, fail_on: int) -> None:
        super().__init__()
        self.fail_on = fail_on
        self.attempts = 0

    def put(self, name, data):
        self.attempts += 1
        if self.attempts == self.fail_on:
            raise TransportError("storage quota exceeded", status=507)
        return super().put(name, data)


class _BrokenDiskStore(MemoryStore if ghostlog else object):
    def get(self, locator):
        raise OSError("disk unplugged")


class _ClosingStore(MemoryStore if ghostlog else object):
    def __init__(self) -> None:
        super().__init__()
        self.closed = False

    def close(self) -> None:
        self.closed = True


def _fake_blob_api(token: str):
    blobs: dict[str, bytes] = {}

    def handler(request: "httpx.Request") -> "httpx.Response":
        if request.headers.get("x-audit-token") != token:
            return httpx.Response(401, json={"error": "Access denied"})
        params = request.url.params
        if request.url.path == "/api/upload":
            if request.method == "POST":
                name = params["filename"]
                url = f"https://blob.example/store/{name}"
                blobs[url] = request.content
                return httpx.Response(200, json={"url": url, "pathname": name})
            url = params["url"]
            if url not in blobs:
                return httpx.Response(404, json={"error": "not found"})
            if request.method == "DELETE":
                del blobs[url]
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(200, content=blobs[url])
        if request.url.path == "/api/files":
            prefix = params.get("prefix", "")
            limit = int(params.get("limit", "50"))
            start = int(params.get("cursor") or 0)
            names = sorted(url for url in blobs if url.rsplit("/", 1)[1].startswith(prefix))
            window = names[start:start + limit]
            more = start + limit < len(names)
            return httpx.Response(200, json={
                "blobs": [
                    {"url": url, "pathname": url.rsplit("/", 1)[1], "size": len(blobs[url]),
                     "uploadedAt": "2026-10-19T00:00:00Z"}
                    for url in window
                ],
                "cursor": str(start + limit) if more else None,
                "hasMore": more,
                "meta": {"count": len(window)},
            })
        return httpx.Response(404, json={"error": "no route"})

    return blobs, handler


@unittest.skipIf(ghostlog is None, f"dependency unavailable: {_IMPORT_ERROR}")
class StoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = TemporaryDirectory()
        self.tmp_path = Path(self.tmpdir.name)

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _exercise(self, store) -> None:
        for index in range(5):
            store.put(f"crash_100000_p{index + 1:03d}.log", b"x" * index)
        store.put("notes.txt", b"plain")
        self.assertEqual(store.get("crash_100000_p003.log"), b"xx")
        page = store.list("crash_", limit=2)
        self.assertEqual([item.pathname for item in page.items], ["crash_100000_p001.log", "crash_100000_p002.log"])
        self.assertTrue(page.has_more)
        rest = store.list("crash_", cursor=page.cursor, limit=10)
        self.assertEqual(len(rest.items), 3)
        self.assertFalse(rest.has_more)
        self.assertIsNone(rest.cursor)
        self.assertTrue(store.delete("notes.txt"))
        self.assertFalse(store.delete("notes.txt"))
        with self.assertRaises(TransportError) as ctx:
            store.get("notes.txt")
        self.assertEqual(ctx.exception.status, 404)

    def test_memory_store(self):
        self._exercise(MemoryStore())

    def test_directory_store(self):
        store = DirectoryStore(self.tmp_path / "bucket")
        self._exercise(store)
        self.assertTrue((self.tmp_path / "bucket" / "crash_100000_p001.log").exists())

    def test_directory_store_rejects_escaping_locators(self):
        store = DirectoryStore(self.tmp_path / "bucket")
        for locator in ("../outside.log", "/etc/passwd", "a/b.log", "", ".."):
            with self.subTest(locator=locator):
                with self.assertRaises(TransportError):
                    store.put(locator, b"x")

    def test_open_store_dispatch(self):
        self.assertIsInstance(open_store(str(self.tmp_path / "d"), "t"), DirectoryStore)
        store = open_store("https://audit.example", "t")
        self.assertIsInstance(store, HttpStore)
        store.close()


@unittest.skipIf(ghostlog is None, f"dependency unavailable: {_IMPORT_ERROR}")
class GateTests(unittest.TestCase):
    def test_shared_secret(self):
        gate = SharedSecretGate("audit-secret")
        self.assertTrue(gate.verify("audit-secret"))
        for presented in ("audit-secreT", "audit", "", None):
            with self.subTest(presented=presented):
                self.assertFalse(gate.verify(presented))
        with self.assertRaises(ValueError):
            SharedSecretGate("")

    def test_gated_store_token(self):
        store = GatedStore(MemoryStore(), SharedSecretGate("audit-secret"), "guess")
        with self.assertRaises(TransportError) as ctx:
            store.put("report.csv", b"a,b")
        self.assertEqual(ctx.exception.status, 401)
        with self.assertRaises(TransportError):
            store.list()

    def test_extension_filter_blocks_raw_file_but_not_envelope(self):
        inner = MemoryStore()
        adapter = TransportAdapter(GatedStore(inner, SharedSecretGate("audit-secret"), "audit-secret"), silent=True)
        payload = b"MZ\x90\x00" + os.urandom(300)
        with self.assertRaises(TransportError) as ctx:
            adapter.upload_plain("tool.exe", payload)
        self.assertEqual(ctx.exception.status, 403)
        locators = adapter.upload("tool.exe", payload, CodecConfig(key="audit-secret", pacing=0))
        self.assertTrue(all(loc.endswith(".log") for loc in locators))
        self.assertNotIn(b"MZ", b"".join(inner.objects.values()))
        restored = adapter.download(locators, "audit-secret")
        self.assertEqual((restored.name, restored.data), ("tool.exe", payload))


@unittest.skipIf(ghostlog is None, f"dependency unavailable: {_IMPORT_ERROR}")
class AdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryStore()
        self.sleep = _RecordingSleep()
        self.adapter = TransportAdapter(self.store, Pacer(0.2, sleep=self.sleep), silent=True)
        self.config = CodecConfig(key="k1", compressed=False, chunk_size=100)

    def test_upload_download_roundtrip(self):
        payload = bytes(range(256))
        locators = self.adapter.upload("report.csv", payload, self.config)
        self.assertEqual(len(locators), 3)
        self.assertEqual(len(self.store.objects), 3)
        self.assertEqual(self.sleep.calls, [0.2, 0.2])
        restored = self.adapter.download(list(reversed(locators)), "k1")
        self.assertEqual((restored.name, restored.data), ("report.csv", payload))

    def test_stored_names_are_opaque(self):
        locators = self.adapter.upload("quarterly-salaries.xlsx", b"secret" * 40, self.config)
        log_ids = {loc.split("_")[1] for loc in locators}
        self.assertEqual(len(log_ids), 1)
        for locator in locators:
            self.assertNotIn("salaries", locator)
            self.assertRegex(locator, r"^crash_\d{6}_p\d{3}\.log$")

    def test_zero_delay_pacer_never_sleeps(self):
        adapter = TransportAdapter(self.store, Pacer(0, sleep=self.sleep), silent=True)
        adapter.upload("a.bin", os.urandom(450), self.config)
        self.assertEqual(self.sleep.calls, [])

    def test_fail_fast_without_rollback(self):
        store = _FlakyStore(fail_on=2)
        adapter = TransportAdapter(store, silent=True)
        with self.assertRaises(TransportError) as ctx:
            adapter.upload("big.bin", os.urandom(450), self.config)
        self.assertEqual(ctx.exception.status, 507)
        self.assertIn("part 2/5", str(ctx.exception))
        self.assertEqual(store.attempts, 2)
        self.assertEqual(len(store.objects), 1)

    def test_partial_set_cannot_be_restored(self):
        locators = self.adapter.upload("a.bin", os.urandom(300), self.config)
        with self.assertRaises(IncompleteSetError):
            self.adapter.download([locators[0], locators[2]], "k1")

    def test_fetch_wraps_os_errors(self):
        adapter = TransportAdapter(_BrokenDiskStore(), silent=True)
        with self.assertRaises(TransportError):
            adapter.fetch("anything.log")

    def test_fetch_disguised_round_trip_through_companion(self):
        plain = b"col1,col2\n" + os.urandom(97)
        locator = self.adapter.upload_plain("report.csv.part001", plain)
        save_name, text = self.adapter.fetch_disguised(locator, "k1")
        self.assertEqual(save_name, "system_log_report.csv.part001.log")
        self.assertTrue(text.startswith(ghostlog.DUMP_HEADER))
        self.assertNotIn(plain.hex(), text.replace("\n", ""))
        name, data = ghostlog.recover_logs({save_name: text}, "k1")
        self.assertEqual((name, data), ("RESTORED_report.csv", plain))

    @unittest.skipIf(os.name == "nt", "needs a POSIX shell")
    def test_companion_command_restores_disguised_downloads(self):
        key = "it's \"$HOME\" `id`"
        with TemporaryDirectory() as tmp:
            for name, data in (("report.csv.part002", b"42\n"), ("report.csv.part001", b"id,total\n1,")):
                save_name, text = self.adapter.fetch_disguised(self.adapter.upload_plain(name, data), key)
                Path(tmp, save_name).write_text(text, encoding="utf-8")
            command = ghostlog.companion_command(key).replace("python3", shlex.quote(sys.executable), 1)
            result = subprocess.run(command, shell=True, cwd=tmp, capture_output=True, text=True)
            self.assertEqual(result.returncode, 0, result.stderr)
            self.assertIn("Restored RESTORED_report.csv", result.stdout)
            self.assertEqual(Path(tmp, "RESTORED_report.csv").read_bytes(), b"id,total\n1,42\n")

    def test_fetch_disguised_generic_name(self):
        locator = self.adapter.upload_plain("notes.txt", b"hello")
        save_name, _ = self.adapter.fetch_disguised(locator, "k1")
        self.assertRegex(save_name, r"^system_error_\d+\.log$")

    def test_iter_objects_walks_pages(self):
        for index in range(7):
            self.store.put(f"obj{index}.log", b"x")
        names = [item.pathname for item in self.adapter.iter_objects("obj", limit=3)]
        self.assertEqual(names, [f"obj{index}.log" for index in range(7)])


@unittest.skipIf(ghostlog is None, f"dependency unavailable: {_IMPORT_ERROR}")
class HttpStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.blobs, handler = _fake_blob_api("audit-secret")
        self.client = httpx.Client(transport=httpx.MockTransport(handler))
        self.store = HttpStore("https://audit.example/", "audit-secret", client=self.client)

    def tearDown(self) -> None:
        self.client.close()

    def test_put_get_delete(self):
        url = self.store.put("crash_123456_p001.log", b"{}")
        self.assertEqual(url, "https://blob.example/store/crash_123456_p001.log")
        self.assertEqual(self.store.get(url), b"{}")
        self.assertTrue(self.store.delete(url))
        self.assertFalse(self.store.delete(url))
        with self.assertRaises(TransportError) as ctx:
            self.store.get(url)
        self.assertEqual(ctx.exception.status, 404)

    def test_bad_token(self):
        store = HttpStore("https://audit.example", "wrong", client=self.client)
        with self.assertRaises(TransportError) as ctx:
            store.put("a.log", b"x")
        self.assertEqual(ctx.exception.status, 401)
        self.assertIn("Access denied", str(ctx.exception))

    def test_listing_pages(self):
        for index in range(5):
            self.store.put(f"crash_100000_p{index + 1:03d}.log", b"abc")
        page = self.store.list("crash_", limit=2)
        self.assertEqual(len(page.items), 2)
        self.assertTrue(page.has_more)
        self.assertEqual(page.items[0].size, 3)
        adapter = TransportAdapter(self.store, silent=True)
        self.assertEqual(len(list(adapter.iter_objects("crash_", limit=2))), 5)

    def test_pipeline_over_http(self):
        adapter = TransportAdapter(self.store, silent=True)
        payload = os.urandom(1000)
        config = CodecConfig(key="k1", chunk_size=300, compressed=False, pacing=0)
        locators = adapter.upload("dump.bin", payload, config)
        self.assertEqual(len(locators), 4)
        restored = adapter.download(locators, "k1")
        self.assertEqual(restored.data, payload)
        save_name, text = adapter.fetch_disguised(locators[0], "k1")
        self.assertTrue(save_name.startswith("system_log_crash_"))
        self.assertIn(ghostlog.DUMP_START, text)

    def test_network_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(refuse))
        store = HttpStore("https://audit.example", "audit-secret", client=client)
        with self.assertRaises(TransportError) as ctx:
            store.get("https://blob.example/x")
        self.assertIsNone(ctx.exception.status)
        client.close()


@unittest.skipIf(ghostlog is None, f"dependency unavailable: {_IMPORT_ERROR}")
class CliStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = TemporaryDirectory()
        self.tmp_path = Path(self.tmpdir.name)
        self.store_dir = self.tmp_path / "store"

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _cli(self, *args: str):
        buffer = io.StringIO()
        with redirect_stdout(buffer), patch.dict(os.environ, {"GHOSTLOG_PACING_MS": "1"}):
            code = cli(list(args))
        return code, buffer.getvalue()

    def test_push_then_pull(self):
        src = self.tmp_path / "budget.xlsx"
        data = os.urandom(2500)
        src.write_bytes(data)
        code, out = self._cli(
            "push", str(src), "-k", "k1", "--store", str(self.store_dir), "--chunk-size", "1000", "--no-compress"
        )
        self.assertEqual(code, 0, out)
        self.assertIn("Sending part 3/3...", out)
        locators = sorted(os.listdir(self.store_dir))
        self.assertEqual(len(locators), 3)
        out_dir = self.tmp_path / "pulled"
        out_dir.mkdir()
        code, out = self._cli("pull", *reversed(locators), "-k", "k1", "--store", str(self.store_dir), "-o", str(out_dir))
        self.assertEqual(code, 0, out)
        self.assertEqual((out_dir / "budget.xlsx").read_bytes(), data)

    def test_pull_with_missing_part_fails(self):
        src = self.tmp_path / "a.bin"
        src.write_bytes(os.urandom(300))
        self._cli("push", str(src), "-k", "k1", "--store", str(self.store_dir), "--chunk-size", "100", "--no-compress")
        locators = sorted(os.listdir(self.store_dir))
        code, out = self._cli("pull", locators[0], locators[2], "-k", "k1", "--store", str(self.store_dir), "-o", str(self.tmp_path))
        self.assertEqual(code, 1)
        self.assertIn("FAIL!", out)

    def test_disguise_then_recover(self):
        store = DirectoryStore(self.store_dir)
        store.put("report.csv.part001", b"id,total\n1,")
        store.put("report.csv.part002", b"42\n")
        logs_dir = self.tmp_path / "logs"
        logs_dir.mkdir()
        for locator in ("report.csv.part002", "report.csv.part001"):
            code, out = self._cli("disguise", locator, "-k", "k1", "--store", str(self.store_dir), "-o", str(logs_dir))
            self.assertEqual(code, 0, out)
            self.assertIn("python3 -c", out)
        logs = sorted(str(p) for p in logs_dir.iterdir())
        self.assertEqual([Path(p).name for p in logs], ["system_log_report.csv.part001.log", "system_log_report.csv.part002.log"])
        out_dir = self.tmp_path / "recovered"
        out_dir.mkdir()
        code, out = self._cli("recover", *logs, "-k", "k1", "-o", str(out_dir))
        self.assertEqual(code, 0, out)
        self.assertEqual((out_dir / "RESTORED_report.csv").read_bytes(), b"id,total\n1,42\n")

    def _push_pull(self, push_flags, pull_flags, env):
        src = self.tmp_path / "plan.docx"
        data = os.urandom(1800)
        src.write_bytes(data)
        out_dir = self.tmp_path / "pulled"
        out_dir.mkdir()
        with patch.dict(os.environ, env):
            code, out = self._cli(
                "push", str(src), "-k", "k1", "--store", str(self.store_dir), "--chunk-size", "700", *push_flags
            )
            self.assertEqual(code, 0, out)
            locators = sorted(os.listdir(self.store_dir))
            stored = (self.store_dir / locators[0]).read_text(encoding="utf-8")
            self.assertTrue(stored.startswith(ghostlog.DUMP_HEADER))
            code, out = self._cli("pull", *locators, "-k", "k1", "--store", str(self.store_dir), "-o", str(out_dir), *pull_flags)
        self.assertEqual(code, 0, out)
        self.assertEqual((out_dir / "plan.docx").read_bytes(), data)

    def test_push_pull_follow_carrier_from_env(self):
        self._push_pull([], [], {"GHOSTLOG_CARRIER": "text"})

    def test_push_pull_carrier_flag(self):
        self._push_pull(["--carrier", "text"], ["--carrier", "text"], {})

    def test_store_is_closed_after_command(self):
        store = _ClosingStore()
        with patch("ghostlog.transport.open_store", return_value=store):
            code, out = self._cli("pull", "missing.log", "-k", "k1", "--store", "https://audit.example", "-o", str(self.tmp_path))
        self.assertEqual(code, 1)
        self.assertIn("FAIL!", out)
        self.assertIn("x-audit-token", out)
        self.assertTrue(store.closed)

    def test_missing_key_is_a_usage_error(self):
        with patch.dict(os.environ, {"GHOSTLOG_KEY": ""}):
            with self.assertRaises(SystemExit):
                with redirect_stdout(io.StringIO()), patch("sys.stderr", io.StringIO()):
                    cli(["pull", "x.log", "--store", str(self.store_dir)])


if __name__ == "__main__":
    unittest.main()
