# Tests for SQSPubSubConfig

import pytest

from sqspubsub import DeliveryMode, SQSPubSub, SQSPubSubConfig


class TestSQSPubSubConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("SQS_PUBSUB_ENV", raising=False)
        config = SQSPubSubConfig()

        assert config.managed
        assert config.receive_message_timeout == 0
        assert config.queue_name_prefix == "local"
        assert config.delivery_mode == DeliveryMode.AT_MOST_ONCE

    def test_queue_url_selects_shared_variant(self):
        assert not SQSPubSubConfig(queue_url="https://sqs/q.fifo").managed

    def test_rejects_negative_delay(self):
        with pytest.raises(ValueError):
            SQSPubSubConfig(receive_message_timeout=-0.5)

    def test_rejects_long_poll_over_limit(self):
        with pytest.raises(ValueError):
            SQSPubSubConfig(wait_time_seconds=21)

    def test_rejects_unknown_delivery_mode(self):
        with pytest.raises(ValueError):
            SQSPubSubConfig(delivery_mode="exactly_once")

    def test_with_options(self):
        config = SQSPubSubConfig().with_options(receive_message_timeout=1.5)
        assert config.receive_message_timeout == 1.5

    def test_with_options_rejects_unknown(self):
        with pytest.raises(TypeError):
            SQSPubSubConfig().with_options(queueUrl="q")

    def test_engine_rejects_unknown_option(self, transport):
        with pytest.raises(TypeError):
            SQSPubSub(transport=transport, poll_forever=True)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SQS_PUBSUB_QUEUE_URL", "https://sqs/shared.fifo")
        monkeypatch.setenv("SQS_PUBSUB_RECEIVE_MESSAGE_TIMEOUT", "0.25")
        monkeypatch.setenv("SQS_PUBSUB_WAIT_TIME_SECONDS", "5")
        monkeypatch.setenv("SQS_PUBSUB_ENV", "production")
        monkeypatch.setenv("SQS_PUBSUB_DELIVERY_MODE", "at_least_once")
        monkeypatch.setenv("AWS_REGION", "eu-west-1")
        monkeypatch.setenv("SQS_ENDPOINT_URL", "http://localhost:4566")

        config = SQSPubSubConfig.from_env()

        assert config.queue_url == "https://sqs/shared.fifo"
        assert config.receive_message_timeout == 0.25
        assert config.wait_time_seconds == 5
        assert config.queue_name_prefix == "production"
        assert config.delivery_mode == DeliveryMode.AT_LEAST_ONCE
        assert config.client_config == {
            "region_name": "eu-west-1",
            "endpoint_url": "http://localhost:4566",
        }

    def test_from_env_overrides(self, monkeypatch):
        monkeypatch.delenv("SQS_PUBSUB_QUEUE_URL", raising=False)
        monkeypatch.delenv("AWS_REGION", raising=False)
        monkeypatch.setenv("AWS_DEFAULT_REGION", "us-west-2")

        config = SQSPubSubConfig.from_env(receive_message_timeout=2)

        assert config.managed
        assert config.receive_message_timeout == 2
        assert config.client_config["region_name"] == "us-west-2"
