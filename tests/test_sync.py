"""Tests for the sync manager."""

import copy
import sys
import threading
import unittest
from unittest.mock import MagicMock, patch

from time_tracker.errors import TransportError
from time_tracker.events import SYNC_ERROR, SYNC_START, SYNC_SUCCESS
from time_tracker.http_sync import HttpSyncClient
from time_tracker.storage import MemoryStore
from time_tracker.sync import DEFAULT_PROJECT, SyncManager, SyncState, main


def make_client():
    client = MagicMock(spec=HttpSyncClient)
    client.device_id = "desktop_1"
    client.check_health.return_value = True
    client.post_sync.return_value = {"success": True, "serverChanges": []}
    return client


class TestPerformSync(unittest.TestCase):
    """Test cases for SyncManager.perform_sync."""

    def setUp(self):
        """Set up test fixtures."""
        self.store = MemoryStore()
        self.client = make_client()
        self.manager = SyncManager(self.store, self.client, max_retries=3)
        self.events = []
        self.manager.events.on("*", lambda event, payload: self.events.append((event, payload)))

    def test_successful_sync_updates_cursor_and_emits(self):
        """Test a clean cycle persists lastSync and emits start/success."""
        with patch("time_tracker.sync.now_ms", return_value=1234):
            result = self.manager.perform_sync()

        self.assertTrue(result["success"])
        self.assertEqual(result["outcome"], "applied")
        self.assertEqual(self.store.get("lastSync"), 1234)
        self.assertEqual(self.manager.last_sync, 1234)
        self.assertEqual([event for event, _ in self.events], [SYNC_START, SYNC_SUCCESS])
        self.assertEqual(self.events[1][1], {"timestamp": 1234, "queueItems": 0})
        self.assertEqual(self.manager.state, SyncState.IDLE)
        self.assertFalse(self.manager.is_syncing)

    def test_request_carries_queued_changes(self):
        """Test that the offline queue is pushed and acknowledged."""
        self.manager.queue.enqueue("create", "timeEntry", {"id": "local_1", "d": 1})
        self.manager.queue.enqueue("update", "timeEntry", {"id": "local_1", "d": 2})
        self.manager.last_sync = 99

        self.manager.perform_sync()

        request = self.client.post_sync.call_args[0][0]
        self.assertEqual(request["deviceId"], "desktop_1")
        self.assertEqual(request["lastSync"], 99)
        self.assertEqual(len(request["changes"]), 1)
        self.assertEqual(request["changes"][0]["action"], "create")
        self.assertEqual(request["changes"][0]["data"], {"id": "local_1", "d": 2})
        self.assertEqual(request["metadata"]["platform"], "desktop")
        self.assertEqual(len(self.manager.queue), 0)

    def test_changes_queued_during_round_trip_are_kept(self):
        """Test that only the transmitted snapshot is acknowledged."""
        self.manager.queue.enqueue("update", "timeEntry", {"id": "a"})

        def respond(request):
            self.manager.queue.enqueue("update", "timeEntry", {"id": "b"})
            return {"success": True, "serverChanges": []}

        self.client.post_sync.side_effect = respond

        self.manager.perform_sync()

        self.assertEqual([c.record_id for c in self.manager.queue.items()], ["b"])

    def test_server_changes_are_applied_and_persisted(self):
        self.client.post_sync.return_value = {
            "success": True,
            "serverChanges": {"timeEntries": [{"_id": "t1", "description": "Remote"}]},
        }

        self.manager.perform_sync()

        entries = self.store.get("timeEntries")
        self.assertEqual(entries[0]["id"], "t1")
        self.assertEqual(entries[0]["data"]["description"], "Remote")

    def test_server_assigned_ids_remap_local_records_and_queue(self):
        self.store.set(
            "timeEntries",
            [{"id": "local_1", "type": "timeEntry", "data": {"d": 1}, "lastModified": 5}],
        )
        self.client.post_sync.side_effect = lambda request: (
            self.manager.queue.enqueue("update", "timeEntry", {"id": "local_1", "d": 3})
            and {
                "success": True,
                "serverChanges": [
                    {"id": "srv-1", "localId": "local_1", "type": "timeEntry",
                     "action": "update", "data": {"d": 1}, "lastModified": 5}
                ],
            }
        )

        self.manager.perform_sync()

        self.assertEqual(self.store.get("timeEntries")[0]["id"], "srv-1")
        self.assertEqual(self.manager.queue.items()[0].record_id, "srv-1")

    def test_retry_after_lost_ack_gives_same_state(self):
        """Test that replaying the same exchange does not duplicate records."""
        self.manager.queue.enqueue("create", "timeEntry", {"id": "local_1"})
        response = {
            "success": True,
            "serverChanges": [
                {"id": "t9", "type": "timeEntry", "action": "create", "data": {"d": 1},
                 "lastModified": 10}
            ],
        }
        self.client.post_sync.side_effect = [
            copy.deepcopy(response),
            TransportError("connection reset"),
            copy.deepcopy(response),
        ]

        self.manager.perform_sync()
        once = self.store.get("timeEntries")
        self.manager.perform_sync()
        self.manager.perform_sync()

        self.assertEqual(self.store.get("timeEntries"), once)
        self.assertEqual(len(once), 1)

    def test_unresolved_conflict_keeps_sync_cursor(self):
        """Test that the cursor stays put so the server re-offers the change."""
        local = {"id": "t1", "type": "timeEntry", "data": {"duration": 1000}, "lastModified": 100}
        self.store.set("timeEntries", [local])
        self.manager.last_sync = 1000
        self.store.set("lastSync", 1000)
        self.manager.strategy = "user_choice"
        self.manager.protocol.resolver.register_user_callback(
            "timeEntry", MagicMock(side_effect=RuntimeError("dialog closed"))
        )
        self.manager.queue.enqueue("update", "project", {"id": "p1"})
        self.client.post_sync.return_value = {
            "success": True,
            "serverChanges": [
                {"id": "t1", "type": "timeEntry", "action": "update",
                 "data": {"duration": 2000}, "lastModified": 200}
            ],
        }

        result = self.manager.perform_sync()

        self.assertTrue(result["success"])
        self.assertEqual(result["outcome"], "partial")
        self.assertEqual(self.manager.last_sync, 1000)
        self.assertEqual(self.store.get("lastSync"), 1000)
        self.assertEqual(self.store.get("timeEntries"), [local])
        self.assertEqual(len(self.manager.queue), 0)

        self.manager.protocol.resolver.register_user_callback(
            "timeEntry", lambda conflict: {"data": conflict.server, "selection": "server"}
        )
        with patch("time_tracker.sync.now_ms", return_value=5000):
            self.manager.perform_sync()

        self.assertEqual(self.store.get("lastSync"), 5000)
        self.assertEqual(self.store.get("timeEntries")[0]["data"], {"duration": 2000})

    def test_partial_result_emits_error_with_partial_flag(self):
        self.client.post_sync.return_value = {
            "success": True,
            "serverChanges": [
                {"id": "t1", "type": "timeEntry", "action": "create", "data": {}},
                {"type": "timeEntry", "action": "create", "data": {}},
            ],
        }

        result = self.manager.perform_sync()

        self.assertTrue(result["success"])
        self.assertEqual(result["outcome"], "partial")
        self.assertEqual([event for event, _ in self.events], [SYNC_START, SYNC_SUCCESS, SYNC_ERROR])
        self.assertTrue(self.events[2][1]["partial"])
        self.assertEqual(len(self.events[2][1]["errors"]), 1)

    def test_unreachable_server_fails_fast(self):
        """Test the health probe guards the round trip and the cursor."""
        self.client.check_health.return_value = False
        self.manager.last_sync = 50

        result = self.manager.perform_sync()

        self.assertFalse(result["success"])
        self.client.post_sync.assert_not_called()
        self.assertEqual(self.manager.last_sync, 50)
        self.assertEqual(self.manager.consecutive_failures, 1)
        self.assertEqual(self.manager.state, SyncState.ERROR_BACKOFF)

    def test_rejected_response_is_a_failure(self):
        self.client.post_sync.return_value = {"success": False, "error": "Unauthorized"}
        self.manager.queue.enqueue("update", "timeEntry", {"id": "a"})

        result = self.manager.perform_sync()

        self.assertEqual(result, {"success": False, "error": "Unauthorized"})
        self.assertEqual(len(self.manager.queue), 1)
        self.assertIsNone(self.store.get("lastSync"))

    def test_invalid_request_is_not_sent(self):
        self.client.device_id = ""

        result = self.manager.perform_sync()

        self.assertFalse(result["success"])
        self.assertIn("Missing device ID", result["error"])
        self.client.post_sync.assert_not_called()

    def test_goes_offline_after_max_retries(self):
        self.client.post_sync.side_effect = TransportError("HTTP 500")

        for _ in range(2):
            self.manager.perform_sync()
        self.assertTrue(self.manager.is_online)
        self.assertNotIn(SYNC_ERROR, [event for event, _ in self.events])

        self.manager.perform_sync()

        self.assertFalse(self.manager.is_online)
        self.assertEqual(self.events[-1], (SYNC_ERROR, {"error": "HTTP 500"}))

    def test_success_resets_failure_counter(self):
        self.client.post_sync.side_effect = [TransportError("down"), {"success": True}]

        self.manager.perform_sync()
        self.manager.perform_sync()

        self.assertEqual(self.manager.consecutive_failures, 0)
        results = self.manager.statistics.get_results()
        self.assertEqual(results["totalSyncs"], 2)
        self.assertEqual(results["failedSyncs"], 1)

    def test_overlapping_sync_is_rejected(self):
        """Test that a tick during an in-flight sync is a no-op."""
        entered = threading.Event()
        release = threading.Event()

        def slow_post(request):
            entered.set()
            release.wait(5)
            return {"success": True}

        self.client.post_sync.side_effect = slow_post
        worker = threading.Thread(target=self.manager.perform_sync)
        worker.start()
        entered.wait(5)

        result = self.manager.perform_sync()
        release.set()
        worker.join(5)

        self.assertEqual(result, {"success": False, "error": "Sync already in progress"})
        self.assertEqual(self.client.post_sync.call_count, 1)

    def test_unexpected_error_does_not_escape(self):
        self.client.post_sync.side_effect = KeyError("bug")

        result = self.manager.perform_sync()

        self.assertFalse(result["success"])
        self.assertFalse(self.manager.is_syncing)


class TestOfflineOperations(unittest.TestCase):
    """Test cases for online-first mutations and the offline queue."""

    def setUp(self):
        """Set up test fixtures."""
        self.store = MemoryStore()
        self.client = make_client()
        self.manager = SyncManager(self.store, self.client)

    def test_create_time_entry_online(self):
        self.client.create_time_entry.return_value = {"_id": "srv-1", "description": "x"}

        result = self.manager.create_time_entry({"description": "x"})

        self.assertEqual(result, {"success": True, "data": {"_id": "srv-1", "description": "x"}})
        self.assertEqual(len(self.manager.queue), 0)
        self.assertEqual(self.store.get("timeEntries")[0]["id"], "srv-1")

    def test_create_time_entry_falls_back_to_queue(self):
        self.client.create_time_entry.side_effect = TransportError("down")

        result = self.manager.create_time_entry({"description": "x"})

        self.assertTrue(result["success"])
        self.assertTrue(result["queued"])
        local_id = result["data"]["id"]
        self.assertTrue(local_id.startswith("local_"))
        self.assertTrue(result["data"]["_pendingSync"])
        self.assertEqual(self.manager.queue.items()[0].record_id, local_id)
        self.assertEqual(self.store.get("timeEntries")[0]["id"], local_id)

    def test_offline_mutations_skip_the_network(self):
        self.manager.is_online = False

        self.manager.create_time_entry({"description": "x"})
        self.manager.save_project({"name": "P"})
        self.manager.record_window_event({"app": "Code"})

        self.client.create_time_entry.assert_not_called()
        self.client.send_change.assert_not_called()
        self.assertEqual(
            [c.type for c in self.manager.queue.items()], ["timeEntry", "project", "windowEvent"]
        )
        self.assertIsNone(self.store.get("windowEvents"))

    def test_update_of_temporary_entry_is_queued(self):
        self.manager.update_time_entry("local_1", {"description": "y"})

        self.client.update_time_entry.assert_not_called()
        change = self.manager.queue.items()[0]
        self.assertEqual((change.action, change.record_id), ("update", "local_1"))

    def test_update_time_entry_online(self):
        self.client.update_time_entry.return_value = {"_id": "t1", "description": "y"}

        result = self.manager.update_time_entry("t1", {"description": "y"})

        self.client.update_time_entry.assert_called_once_with("t1", {"description": "y"})
        self.assertFalse(result.get("queued"))

    def test_delete_time_entry(self):
        self.store.set("timeEntries", [{"id": "t1", "type": "timeEntry", "data": {}}])
        self.client.send_change.return_value = {}

        self.manager.delete_time_entry("t1")

        change = self.client.send_change.call_args[0][0]
        self.assertEqual((change.action, change.record_id), ("delete", "t1"))
        self.assertEqual(self.store.get("timeEntries"), [])

    def test_save_window_rule_queues_on_failure(self):
        self.client.send_change.side_effect = TransportError("down")

        result = self.manager.save_window_rule({"id": "r1", "pattern": "Code"})

        self.assertTrue(result["queued"])
        self.assertEqual(self.manager.queue.items()[0].action, "update")

    def test_flush_queue_remaps_created_ids(self):
        self.manager.is_online = False
        created = self.manager.create_time_entry({"description": "x"})["data"]
        self.manager.update_time_entry(created["id"], {"description": "y"})
        self.client.send_change.side_effect = [{"_id": "srv-1"}, {"_id": "srv-1"}]

        result = self.manager.flush_queue()

        self.assertEqual(result["processed"], 2)
        sent = [call[0][0] for call in self.client.send_change.call_args_list]
        self.assertEqual([c.action for c in sent], ["create", "update"])
        self.assertEqual(sent[1].record_id, "srv-1")
        entry = self.store.get("timeEntries")[0]
        self.assertEqual(entry["id"], "srv-1")
        self.assertNotIn("_pendingSync", entry["data"])

    def test_flush_queue_stops_at_failure(self):
        self.manager.is_online = False
        for name in ("a", "b"):
            self.manager.save_project({"id": name})
        self.client.send_change.side_effect = TransportError("down")

        result = self.manager.flush_queue()

        self.assertEqual(result["processed"], 0)
        self.assertEqual(result["remaining"], 2)
        self.assertEqual(self.client.send_change.call_count, 1)

    def test_check_connectivity_flushes_when_back_online(self):
        self.manager.is_online = False
        self.manager.consecutive_failures = 3
        self.manager.record_window_event({"app": "Code"})
        self.client.send_change.return_value = {}

        self.assertTrue(self.manager.check_connectivity())

        self.assertTrue(self.manager.is_online)
        self.assertEqual(self.manager.consecutive_failures, 0)
        self.assertEqual(len(self.manager.queue), 0)

    def test_get_projects_online_and_cached(self):
        self.client.fetch_projects.return_value = [{"_id": "p1", "name": "Reports"}]

        self.assertEqual(self.manager.get_projects(), [{"_id": "p1", "name": "Reports"}])

        self.client.fetch_projects.side_effect = TransportError("down")
        self.assertEqual(self.manager.get_projects(), [{"id": "p1", "name": "Reports"}])

    def test_get_projects_offline_cache_keeps_ids(self):
        self.client.fetch_projects.return_value = [{"_id": "p1", "name": "Server"}]
        self.manager.get_projects()
        self.manager.is_online = False

        projects = self.manager.get_projects()

        self.assertEqual(projects, [{"id": "p1", "name": "Server"}])
        self.client.fetch_projects.assert_called_once()

    def test_get_projects_default_when_nothing_cached(self):
        self.manager.is_online = False

        self.assertEqual(self.manager.get_projects(), [DEFAULT_PROJECT])


class TestScheduling(unittest.TestCase):
    """Test cases for init, ticks and status."""

    def setUp(self):
        """Set up test fixtures."""
        self.store = MemoryStore({"lastSync": 77})
        self.client = make_client()
        self.manager = SyncManager(self.store, self.client, sync_interval=3600)

    def tearDown(self):
        """Clean up test fixtures."""
        self.manager.destroy()

    def test_init_loads_state_and_starts_timer(self):
        self.manager.init()

        self.assertEqual(self.manager.last_sync, 77)
        self.assertEqual(self.manager.state, SyncState.IDLE)
        self.assertTrue(self.manager._thread.is_alive())

        self.manager.destroy()
        self.assertIsNone(self.manager._thread)
        self.assertEqual(self.manager.state, SyncState.DISABLED)

    def test_tick_does_nothing_while_disabled(self):
        self.assertIsNone(self.manager.tick())
        self.client.check_health.assert_not_called()

    def test_tick_skips_sync_while_server_unreachable(self):
        self.manager.init(start_timer=False)
        self.manager.is_online = False
        self.client.check_health.return_value = False

        self.assertIsNone(self.manager.tick())
        self.client.post_sync.assert_not_called()

    def test_tick_recovers_from_backoff(self):
        self.manager.init(start_timer=False)
        self.manager.state = SyncState.ERROR_BACKOFF

        result = self.manager.tick()

        self.assertTrue(result["success"])

    def test_get_sync_status(self):
        self.manager.queue.enqueue("create", "windowEvent", {})

        status = self.manager.get_sync_status()

        self.assertEqual(status["lastSync"], 77)
        self.assertEqual(status["queueLength"], 1)
        self.assertFalse(status["isSyncing"])
        self.assertTrue(status["isOnline"])
        self.assertEqual(status["deviceId"], "desktop_1")
        self.assertEqual(status["state"], "disabled")


class TestMain(unittest.TestCase):
    """Test cases for the command line interface."""

    def test_main_help(self):
        with patch.object(sys, "argv", ["time_tracker", "--help"]):
            with patch("builtins.print") as mock_print:
                main()

        self.assertEqual(mock_print.call_args_list[0][0][0], "Sync Manager for Time Tracker")

    @patch("time_tracker.platforms.create_sync_manager")
    @patch("time_tracker.config.get_config")
    def test_main_sync_requires_server(self, mock_get_config, mock_create):
        mock_get_config.return_value.server_url = ""
        mock_get_config.return_value.verbose_logging = False

        with patch.object(sys, "argv", ["time_tracker", "sync"]):
            with patch("builtins.print") as mock_print:
                main()

        mock_create.assert_not_called()
        mock_print.assert_any_call("Error: No sync server configured.")

    @patch("time_tracker.platforms.create_sync_manager")
    @patch("time_tracker.config.get_config")
    def test_main_sync(self, mock_get_config, mock_create):
        mock_get_config.return_value.server_url = "https://sync.example.com"
        mock_get_config.return_value.verbose_logging = False
        mock_create.return_value.perform_sync.return_value = {
            "success": True, "sent": 2, "applied": 3, "conflicts": 1, "errors": []
        }

        with patch.object(sys, "argv", ["time_tracker", "sync"]):
            with patch("builtins.print") as mock_print:
                main()

        mock_print.assert_called_with("Sync completed: 2 sent, 3 applied, 1 conflicts, 0 errors")

    @patch("time_tracker.platforms.create_sync_manager")
    @patch("time_tracker.config.get_config")
    def test_main_unknown_command(self, mock_get_config, mock_create):
        with patch.object(sys, "argv", ["time_tracker", "bogus"]):
            with patch("builtins.print") as mock_print:
                main()

        mock_print.assert_any_call("Unknown command: bogus")
        mock_create.assert_not_called()
