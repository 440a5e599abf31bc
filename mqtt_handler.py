#!/usr/bin/python3
"""MQTT publisher for scan snapshots (Home Assistant discovery)"""

import json
import logging
import os
import time
from typing import Any, Optional

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion
from paho.mqtt.properties import Properties
from paho.mqtt.reasoncodes import ReasonCode

from scan_session import ScanSnapshot

# MQTT Configuration
MQTT_BROKER = os.getenv("MQTT_BROKER", "localhost")
MQTT_PORT = int(os.getenv("MQTT_PORT", "1883"))
MQTT_USERNAME = os.getenv("MQTT_USERNAME")
MQTT_PASSWORD = os.getenv("MQTT_PASSWORD")
MQTT_CLIENT_ID = os.getenv("MQTT_CLIENT_ID", "nfc_tag_scanner")
MQTT_TOPIC_PREFIX = os.getenv("MQTT_TOPIC_PREFIX", "homeassistant/sensor/nfc_scanner")
MQTT_DISCOVERY_TOPIC = f"{MQTT_TOPIC_PREFIX}/config"
MQTT_STATE_TOPIC = f"{MQTT_TOPIC_PREFIX}/state"

logger = logging.getLogger(__name__)


def snapshot_payload(snapshot: ScanSnapshot) -> dict:
    """JSON-ready view of a snapshot"""
    identity = snapshot.identity
    return {
        "state": snapshot.state.value,
        "status": snapshot.status,
        "scanning": snapshot.is_scanning,
        "technology": identity.technology.value if identity else None,
        "uid": identity.uid_hex if identity else None,
        "content": snapshot.rendered_content or None,
        "extras": dict(snapshot.extras),
        "error": snapshot.error.value if snapshot.error else None,
        "timestamp": time.time(),
    }


class MQTTHandler:
    """Handle MQTT communication for Home Assistant integration"""

    def __init__(self):
        self.client: Optional[mqtt.Client] = None
        self.connected = False

    def setup(self) -> bool:
        """Setup MQTT client and start its network loop"""
        if not MQTT_BROKER:
            logger.warning("MQTT_BROKER not configured, skipping MQTT setup")
            return False

        try:
            self.client = mqtt.Client(
                callback_api_version=CallbackAPIVersion.VERSION2,
                client_id=MQTT_CLIENT_ID,
            )

            if MQTT_USERNAME and MQTT_PASSWORD:
                self.client.username_pw_set(MQTT_USERNAME, MQTT_PASSWORD)

            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect

            logger.info("Connecting to MQTT broker: %s:%d", MQTT_BROKER, MQTT_PORT)
            self.client.connect(MQTT_BROKER, MQTT_PORT, 60)

            # Start the network loop in a separate thread
            self.client.loop_start()

            return True

        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Failed to setup MQTT: %s", e)
            return False

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: mqtt.ConnectFlags,
        rc: ReasonCode,
        properties: Optional[Properties],
    ) -> None:
        """Callback for when MQTT client connects"""
        if rc.value == 0:
            self.connected = True
            logger.info("Connected to MQTT broker")
            self._publish_ha_discovery()
        else:
            self.connected = False
            logger.error("Failed to connect to MQTT broker, return code %d", rc.value)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: mqtt.DisconnectFlags,
        rc: ReasonCode,
        properties: Optional[Properties],
    ) -> None:
        """Callback for when MQTT client disconnects"""
        self.connected = False
        if rc.value != 0:
            logger.warning("Unexpected MQTT disconnection")
        else:
            logger.info("MQTT client disconnected")

    def _publish_ha_discovery(self):
        """Publish Home Assistant MQTT discovery configuration"""
        if not self.client or not self.connected:
            logger.debug("Skipping HA discovery publish - MQTT not connected")
            return

        discovery_config = {
            "name": "NFC Scanner Last Tag",
            "unique_id": "nfc_scanner_last_tag",
            "state_topic": MQTT_STATE_TOPIC,
            "value_template": "{{ value_json.uid }}",
            "json_attributes_topic": MQTT_STATE_TOPIC,
            "device": {
                "identifiers": ["nfc_tag_scanner"],
                "name": "NFC Tag Scanner",
                "model": "Python NFC Scanner",
                "manufacturer": "Custom",
            },
            "icon": "mdi:nfc-variant",
        }

        self._publish(MQTT_DISCOVERY_TOPIC, discovery_config, "discovery configuration")

    def publish_snapshot(self, snapshot: ScanSnapshot) -> None:
        """Publish a scan snapshot as the retained state"""
        if not self.client or not self.connected:
            logger.debug(
                "Skipping snapshot publish - MQTT not connected (%s)", snapshot.status
            )
            return

        self._publish(MQTT_STATE_TOPIC, snapshot_payload(snapshot), "scan state")

    def _publish(self, topic: str, data: dict, what: str) -> None:
        try:
            result = self.client.publish(topic, json.dumps(data), retain=True)
            if result.rc == mqtt.MQTT_ERR_SUCCESS:
                logger.debug("Published %s to %s", what, topic)
            else:
                logger.error("Failed to publish %s, rc: %d", what, result.rc)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Error publishing %s: %s", what, e)

    def cleanup(self):
        """Cleanup MQTT client"""
        if self.client:
            try:
                self.client.loop_stop()
                self.client.disconnect()
                logger.info("MQTT client disconnected and cleaned up")
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.warning("Error cleaning up MQTT: %s", e)
            finally:
                self.client = None
                self.connected = False
