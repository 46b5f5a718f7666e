"""Device bootstrap policy engine: topics, capabilities, QoS/ACL, OTA."""
