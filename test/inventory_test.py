import unittest

import burst_buffer.inventory as inventory
from burst_buffer.config import BbConfig

from test._fakes import (
    GIB,
    POOL,
    FakeTool,
    instance,
    pool,
    script_inventory,
    session,
    sessions_response,
)

PYTHON_STYLE_POOLS = (
    "{u'pools': [{u'id': u'dwcache', u'units': u'bytes', "
    "u'granularity': 16777216, u'quantity': 2048, u'free': 2048}]}"
)


class ParseTest(unittest.TestCase):
    def test_load_response(self):
        self.assertEqual(
            inventory.load_response("{u'id': u'dwcache', u'ok': True}"),
            {"id": "dwcache", "ok": True},
        )
        self.assertEqual(
            inventory.load_response("{'label': \"it's\", 'links': None}"),
            {"label": "it's", "links": None},
        )
        self.assertEqual(inventory.load_response('{"free": 2048}'), {"free": 2048})

    def test_apostrophe_in_value(self):
        text = (
            "{'instances': [{'id': 1, 'label': \"bob's buffer\", "
            "'capacity': {'bytes': 1024, 'nodes': 1}, 'links': {'session': None}}]}"
        )
        response = inventory.parse_response(inventory._InstancesResponse, text)
        assert response is not None
        self.assertEqual(response.instances[0].label, "bob's buffer")
        self.assertEqual(response.instances[0].links.session, None)

    def test_python_style_response(self):
        response = inventory.parse_response(
            inventory._PoolsResponse, PYTHON_STYLE_POOLS
        )
        assert response is not None
        self.assertEqual(
            response.pools,
            [
                inventory.Pool(
                    id="dwcache", granularity=16777216, quantity=2048, free=2048
                )
            ],
        )

    def test_extra_keys_are_ignored(self):
        text = sessions_response({"id": 1, "token": "42", "owner": 1000, "expiry": 0})
        response = inventory.parse_response(inventory._SessionsResponse, text)
        assert response is not None
        self.assertEqual(response.sessions[0].token, "42")
        self.assertEqual(response.sessions[0].created, 0)

    def test_invalid(self):
        with self.assertLogs("burst_buffer.inventory", level="ERROR"):
            self.assertEqual(
                inventory.parse_response(inventory._PoolsResponse, "{not json"), None
            )
        with self.assertLogs("burst_buffer.inventory", level="ERROR"):
            self.assertEqual(
                inventory.parse_response(
                    inventory._SessionsResponse, '{"sessions": [{"id": 1}]}'
                ),
                None,
            )

    def test_session_bytes(self):
        snapshot = inventory.SessionSnapshot(
            [],
            [
                inventory.Instance(
                    id=1,
                    capacity=inventory.InstanceCapacity(bytes=GIB),
                    links=inventory.InstanceLinks(session=7),
                ),
                inventory.Instance(
                    id=2,
                    capacity=inventory.InstanceCapacity(bytes=2 * GIB),
                    links=inventory.InstanceLinks(session=7),
                ),
                inventory.Instance(
                    id=3, capacity=inventory.InstanceCapacity(bytes=GIB)
                ),
            ],
        )
        self.assertEqual(snapshot.session_bytes(), {7: 3 * GIB})


class InventoryTest(unittest.TestCase):
    def setUp(self):
        self.tool = FakeTool()
        self.inventory = inventory.Inventory(self.tool, BbConfig())

    def test_reads(self):
        script_inventory(
            self.tool,
            pools=[pool(), pool("nodes", 10, 10, 1)],
            sessions=[session(1, "42", 1000)],
            instances=[instance(1, 1, GIB)],
        )
        self.tool.respond(
            "show_configurations",
            '{"configurations": [{"id": 3, "links": {"instance": 1}}]}',
        )

        pools = self.inventory.get_pools()
        self.assertEqual([p.id for p in pools], [POOL, "nodes"])
        snapshot = self.inventory.get_session_snapshot()
        self.assertEqual(snapshot.sessions[0].owner, 1000)
        self.assertEqual(snapshot.session_bytes(), {1: GIB})
        configurations = self.inventory.get_configurations()
        self.assertEqual(configurations[0].links.instance, 1)
        self.assertEqual(
            self.tool.functions(),
            ["pools", "show_instances", "show_sessions", "show_configurations"],
        )

    def test_failure(self):
        self.tool.fail("pools", "dws unavailable")
        with self.assertLogs("burst_buffer.inventory", level="ERROR") as cm:
            self.assertEqual(self.inventory.get_pools(), None)
        self.assertIn("dws unavailable", cm.output[0])

    def test_uses_configured_timeout(self):
        script_inventory(self.tool)
        timeouts = []
        self.tool._runner = lambda argv, timeout: timeouts.append(timeout) or (
            self.tool._respond(argv, timeout)
        )
        self.inventory.reconfigure(BbConfig(other_timeout=7.0))
        self.inventory.get_pools()
        self.assertEqual(timeouts, [7.0])
