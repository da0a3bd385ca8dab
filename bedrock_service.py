"""
Amazon Bedrock service module.
Handles all interactions with the Bedrock runtime API. Both the streaming and the
non-streaming path yield the same normalized event dicts so callers never need
to know which transport produced a turn.
"""

import boto3
import json
import logging
from typing import Generator, List, Dict, Optional, Any
from botocore.exceptions import ClientError, NoCredentialsError
from dataclasses import dataclass, field
from config import (
    aws_config,
    model_config,
    get_model_config,
    get_max_output_tokens,
    requires_inference_profile,
    supports_thinking,
    supports_caching,
    get_cache_ttl_options,
    get_thinking_max_budget,
)


logger = logging.getLogger(__name__)


class BedrockError(Exception):
    """Custom exception for Bedrock service errors"""

    def __init__(self, message: str, code: str = ""):
        super().__init__(message)
        self.code = code


@dataclass
class GenerationConfig:
    """Configuration for a single generation request"""
    max_tokens: int = 16000
    temperature: Optional[float] = None
    stop_sequences: Optional[List[str]] = None
    throughput_mode: str = "cross-region"
    enable_thinking: bool = False
    thinking_budget: int = 10000


@dataclass
class ToolUseBlock:
    """Represents a tool_use block from the response"""
    id: str = ""
    name: str = ""
    input: Dict = field(default_factory=dict)


@dataclass
class GenerationResult:
    """Result from a non-streaming generation request"""
    content: str = ""
    tool_uses: List[ToolUseBlock] = field(default_factory=list)
    content_blocks: List[Dict] = field(default_factory=list)
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0


def result_to_events(result: GenerationResult) -> Generator[Dict[str, Any], None, None]:
    """Replay a complete GenerationResult as the event sequence the streaming path emits."""
    yield {
        "type": "usage_start",
        "content": "",
        "usage": {
            "input_tokens": result.input_tokens,
            "cache_read_input_tokens": result.cache_read_tokens,
            "cache_creation_input_tokens": result.cache_write_tokens,
        },
    }
    for block in result.content_blocks:
        block_type = block.get("type")
        if block_type == "text":
            yield {"type": "text_start", "content": ""}
            if block.get("text"):
                yield {"type": "text", "content": block["text"]}
            yield {"type": "text_end", "content": ""}
        elif block_type == "tool_use":
            yield {
                "type": "tool_use_start",
                "content": "",
                "data": {"id": block.get("id", ""), "name": block.get("name", "")},
            }
            yield {"type": "tool_use_delta", "content": json.dumps(block.get("input", {}))}
            yield {"type": "tool_use_end", "content": ""}
    yield {
        "type": "message_end",
        "content": "",
        "usage": {"output_tokens": result.output_tokens},
        "stop_reason": result.stop_reason,
    }


class BedrockService:
    """
    Service class for Amazon Bedrock interactions.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region

        self.client = self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.", code="NoCredentials")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    def _get_model_identifier(self, model_id: str, config: GenerationConfig) -> str:
        """Get the appropriate model identifier based on throughput mode"""
        if config.throughput_mode == "cross-region":
            if model_id.startswith(("us.", "eu.", "ap.")):
                return model_id
            elif requires_inference_profile(model_id):
                region_prefix = "eu" if self.region.startswith("eu-") else "us"
                return f"{region_prefix}.{model_id}"

        return get_model_config(model_id).get("base_id", model_id)

    def _cache_control(self, model_id: str) -> Dict[str, Any]:
        ctrl: Dict[str, Any] = {"type": "ephemeral"}
        if "1h" in get_cache_ttl_options(model_id):
            ctrl["ttl"] = "1h"
        return ctrl

    def _format_request_body(
        self,
        messages: List[Dict],
        system_prompt: Optional[str],
        model_id: str,
        config: GenerationConfig,
        tools: Optional[List[Dict]] = None
    ) -> Dict[str, Any]:
        """Format the Anthropic request body with tool_use and prompt caching.

        Only ``role`` and ``content`` are forwarded; bookkeeping keys such as
        ``pinned`` stay local. Messages flagged with ``cache_hint`` get a cache
        breakpoint; without any hint the second-to-last user turn is used.
        """
        use_cache = supports_caching(model_id)
        formatted: List[Dict[str, Any]] = []
        hinted: List[int] = []
        for msg in messages:
            if msg.get("role") == "system":
                continue
            content = msg.get("content")
            if isinstance(content, str) and not content.strip():
                content = "(no content)"
            elif isinstance(content, list) and not content:
                content = [{"type": "text", "text": "(no content)"}]
            if msg.get("cache_hint"):
                hinted.append(len(formatted))
            formatted.append({"role": msg["role"], "content": content})

        if use_cache and len(formatted) >= 3:
            targets = hinted[-1:]
            if not targets:
                for i in range(len(formatted) - 2, -1, -1):
                    if formatted[i]["role"] == "user":
                        targets = [i]
                        break
            for idx in targets:
                content = formatted[idx]["content"]
                if isinstance(content, str):
                    formatted[idx]["content"] = [{
                        "type": "text",
                        "text": content,
                        "cache_control": self._cache_control(model_id),
                    }]
                elif isinstance(content, list):
                    copy = [dict(b) if isinstance(b, dict) else b for b in content]
                    if copy and isinstance(copy[-1], dict):
                        copy[-1]["cache_control"] = self._cache_control(model_id)
                    formatted[idx]["content"] = copy

        effective_max_tokens = min(config.max_tokens, get_max_output_tokens(model_id))
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": effective_max_tokens,
            "messages": formatted,
        }

        if config.enable_thinking and supports_thinking(model_id):
            budget = min(config.thinking_budget, get_thinking_max_budget(model_id))
            # budget must stay below max_tokens with room left for the answer
            budget = min(budget, max(effective_max_tokens - 4000, 1000))
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}
        else:
            body["temperature"] = config.temperature if config.temperature is not None else 1.0

        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences

        if system_prompt:
            if use_cache:
                body["system"] = [{
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": self._cache_control(model_id),
                }]
            else:
                body["system"] = system_prompt

        if tools:
            if use_cache:
                cached_tools = [dict(t) for t in tools]
                cached_tools[-1] = {**cached_tools[-1], "cache_control": self._cache_control(model_id)}
                body["tools"] = cached_tools
            else:
                body["tools"] = tools

        logger.debug(f"Request body keys: {list(body.keys())}, caching: {use_cache}")
        return body

    def _parse_response(self, response_body: Dict) -> GenerationResult:
        """Parse the Anthropic response body into text and tool_use blocks"""
        result = GenerationResult()
        try:
            for block in response_body.get("content", []):
                block_type = block.get("type", "")
                if block_type == "text":
                    result.content += block.get("text", "")
                    result.content_blocks.append(block)
                elif block_type == "tool_use":
                    result.tool_uses.append(ToolUseBlock(
                        id=block.get("id", ""),
                        name=block.get("name", ""),
                        input=block.get("input", {}),
                    ))
                    result.content_blocks.append(block)

            usage = response_body.get("usage", {})
            result.input_tokens = usage.get("input_tokens", 0)
            result.output_tokens = usage.get("output_tokens", 0)
            result.cache_read_tokens = usage.get("cache_read_input_tokens", 0)
            result.cache_write_tokens = usage.get("cache_creation_input_tokens", 0)
            result.stop_reason = response_body.get("stop_reason")
        except (KeyError, IndexError, AttributeError) as e:
            logger.error(f"Error parsing response: {e}")
            raise BedrockError(f"Failed to parse model response: {e}")
        return result

    @staticmethod
    def _client_error(e: ClientError, prefix: str) -> BedrockError:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        error_message = e.response.get("Error", {}).get("Message", str(e))
        logger.error(f"Bedrock API error: {error_code} - {error_message}")
        if error_code in ("ExpiredTokenException", "InvalidSignatureException"):
            return BedrockError("AWS credentials expired. Please refresh.", code=error_code)
        return BedrockError(f"{prefix}: {error_code}: {error_message}", code=error_code)

    def generate_response(
        self,
        messages: List[Dict],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict]] = None
    ) -> GenerationResult:
        """Generate a complete (non-streaming) response."""
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig()
        try:
            model_identifier = self._get_model_identifier(current_model, gen_config)
            request_body = self._format_request_body(
                messages, system_prompt, current_model, gen_config, tools=tools
            )
            logger.info(f"Invoking model: {model_identifier}")
            response = self.client.invoke_model(
                modelId=model_identifier,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json"
            )
            response_body = json.loads(response["body"].read())
            return self._parse_response(response_body)
        except ClientError as e:
            raise self._client_error(e, "Bedrock API error")

    def generate_response_events(
        self,
        messages: List[Dict],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict]] = None
    ) -> Generator[Dict[str, Any], None, None]:
        """Non-streaming call replayed as the normalized stream event sequence."""
        result = self.generate_response(
            messages, system_prompt=system_prompt, model_id=model_id, config=config, tools=tools
        )
        yield from result_to_events(result)

    def generate_response_stream(
        self,
        messages: List[Dict],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict]] = None
    ) -> Generator[Dict[str, Any], None, None]:
        """
        Generate a streaming response using Amazon Bedrock.
        Yields dictionaries with 'type' and 'content'.
        Types: usage_start, text_start, text, text_end,
               tool_use_start, tool_use_delta, tool_use_end, message_end
        """
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig()

        try:
            model_identifier = self._get_model_identifier(current_model, gen_config)
            request_body = self._format_request_body(
                messages, system_prompt, current_model, gen_config, tools=tools
            )
            logger.info(f"Streaming from model: {model_identifier}")
            response = self.client.invoke_model_with_response_stream(
                modelId=model_identifier,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json"
            )

            current_block_type = "text"
            for event in response["body"]:
                chunk = json.loads(event["chunk"]["bytes"])
                event_type = chunk.get("type", "")

                if event_type == "message_start":
                    msg_usage = chunk.get("message", {}).get("usage", {})
                    yield {"type": "usage_start", "content": "", "usage": msg_usage}

                elif event_type == "content_block_start":
                    block = chunk.get("content_block", {})
                    current_block_type = block.get("type", "text")
                    if current_block_type == "text":
                        yield {"type": "text_start", "content": ""}
                        if block.get("text"):
                            yield {"type": "text", "content": block["text"]}
                    elif current_block_type == "tool_use":
                        yield {
                            "type": "tool_use_start",
                            "content": "",
                            "data": {"id": block.get("id", ""), "name": block.get("name", "")},
                        }

                elif event_type == "content_block_delta":
                    delta = chunk.get("delta", {})
                    delta_type = delta.get("type", "")
                    if delta_type == "text_delta" and delta.get("text"):
                        yield {"type": "text", "content": delta["text"]}
                    elif delta_type == "input_json_delta" and delta.get("partial_json"):
                        yield {"type": "tool_use_delta", "content": delta["partial_json"]}

                elif event_type == "content_block_stop":
                    if current_block_type == "text":
                        yield {"type": "text_end", "content": ""}
                    elif current_block_type == "tool_use":
                        yield {"type": "tool_use_end", "content": ""}
                    current_block_type = "text"

                elif event_type == "message_delta":
                    yield {
                        "type": "message_end",
                        "content": "",
                        "usage": chunk.get("usage", {}),
                        "stop_reason": chunk.get("delta", {}).get("stop_reason"),
                    }

        except ClientError as e:
            raise self._client_error(e, "Streaming error")
