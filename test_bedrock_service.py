"""
Tests for the Bedrock runtime wrapper, with the boto3 client mocked out.
"""

import io
import json
from unittest import mock

import pytest
from botocore.exceptions import ClientError

from bedrock_service import BedrockError, BedrockService, GenerationConfig


def _service(client):
    with mock.patch("bedrock_service.boto3.Session") as session:
        session.return_value.client.return_value = client
        return BedrockService(model_id="test-model", region="us-east-1")


def _chunk(payload):
    return {"chunk": {"bytes": json.dumps(payload).encode("utf-8")}}


def test_request_body_drops_local_keys():
    client = mock.MagicMock()
    client.invoke_model.return_value = {"body": io.BytesIO(json.dumps({
        "content": [
            {"type": "text", "text": "Reading the stylesheet."},
            {"type": "tool_use", "id": "t1", "name": "read_file", "input": {"path": "assets/theme.css"}},
        ],
        "usage": {"input_tokens": 120, "output_tokens": 30},
        "stop_reason": "tool_use",
    }).encode("utf-8"))}
    service = _service(client)

    messages = [{"role": "user", "content": "make the button blue", "pinned": True}]
    result = service.generate_response(messages, system_prompt="You edit themes.")

    body = json.loads(client.invoke_model.call_args.kwargs["body"])
    assert body["messages"] == [{"role": "user", "content": "make the button blue"}]
    assert body["system"] == "You edit themes."
    assert result.content == "Reading the stylesheet."
    assert result.tool_uses[0].name == "read_file"
    assert result.input_tokens == 120 and result.stop_reason == "tool_use"


def test_stream_normalizes_events():
    client = mock.MagicMock()
    client.invoke_model_with_response_stream.return_value = {"body": [
        _chunk({"type": "message_start", "message": {"usage": {"input_tokens": 50}}}),
        _chunk({"type": "content_block_start", "content_block": {"type": "tool_use", "id": "t1",
                                                                 "name": "read_file"}}),
        _chunk({"type": "content_block_delta", "delta": {"type": "input_json_delta",
                                                         "partial_json": "{\"path\": \"a.css\"}"}}),
        _chunk({"type": "content_block_stop"}),
        _chunk({"type": "message_delta", "delta": {"stop_reason": "tool_use"},
                "usage": {"output_tokens": 9}}),
    ]}
    service = _service(client)

    events = list(service.generate_response_stream([{"role": "user", "content": "hi"}],
                                                   config=GenerationConfig(max_tokens=1000)))
    assert [e["type"] for e in events] == [
        "usage_start", "tool_use_start", "tool_use_delta", "tool_use_end", "message_end",
    ]
    assert events[1]["data"] == {"id": "t1", "name": "read_file"}
    assert events[-1]["stop_reason"] == "tool_use"


def test_client_error_keeps_the_service_code():
    client = mock.MagicMock()
    client.invoke_model.side_effect = ClientError(
        {"Error": {"Code": "ThrottlingException", "Message": "Rate exceeded"}}, "InvokeModel"
    )
    service = _service(client)
    with pytest.raises(BedrockError) as exc:
        service.generate_response([{"role": "user", "content": "hi"}])
    assert exc.value.code == "ThrottlingException"
    assert "Rate exceeded" in str(exc.value)
