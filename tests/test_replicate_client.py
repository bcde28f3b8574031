"""Tests for prompt building, error classification and the Replicate provider."""

import pytest

from hairsim.services.exceptions import (
    ProviderRejectedError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from hairsim.services.generation import replicate_client
from hairsim.services.generation.replicate_client import (
    GenerationParams,
    ReplicateHairstyleProvider,
    build_prompt,
    classify_error,
)


class TestBuildPrompt:
    def test_includes_style_color_and_gender(self):
        prompt = build_prompt(GenerationParams(style="Pompadour", color="Blonde", gender="Male"))

        assert "this male person's hairstyle" in prompt
        assert "Pompadour, Blonde hair color" in prompt

    def test_random_color_and_auto_gender_are_omitted(self):
        prompt = build_prompt(GenerationParams(style="Bob", color="Random", gender="Auto-detect"))

        assert "this person's hairstyle to: Bob." in prompt
        assert "hair color" not in prompt

    def test_empty_style_rejected(self):
        with pytest.raises(ValueError):
            build_prompt(GenerationParams(style="   "))

    def test_overlong_descriptor_rejected(self):
        with pytest.raises(ValueError):
            build_prompt(GenerationParams(style="x" * 201))


class TestClassifyError:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (TimeoutError("read timed out"), ProviderTimeoutError),
            (Exception("429 Too Many Requests"), ProviderUnavailableError),
            (Exception("503 Service Unavailable"), ProviderUnavailableError),
            (Exception("401 Unauthorized"), ProviderRejectedError),
            (Exception("NSFW content detected"), ProviderRejectedError),
            (Exception("422 invalid input image"), ProviderRejectedError),
            (ConnectionError("connection reset"), ProviderUnavailableError),
            (Exception("something odd"), ProviderUnavailableError),
        ],
    )
    def test_classification(self, error, expected):
        assert isinstance(classify_error(error), expected)

    def test_classified_errors_carry_kind(self):
        assert classify_error(TimeoutError("timeout")).kind == "ProviderTimeout"


class FakeFileOutput:
    def __init__(self, url: str):
        self.url = url


class FakeReplicateClient:
    output: object = None
    error: Exception | None = None
    calls: list = []

    def __init__(self, api_token: str):
        self.api_token = api_token

    def run(self, model, input):
        FakeReplicateClient.calls.append((model, input))
        if FakeReplicateClient.error is not None:
            raise FakeReplicateClient.error
        return FakeReplicateClient.output


@pytest.fixture
def fake_replicate(monkeypatch):
    FakeReplicateClient.output = None
    FakeReplicateClient.error = None
    FakeReplicateClient.calls = []
    monkeypatch.setattr(replicate_client.replicate, "Client", FakeReplicateClient)
    return FakeReplicateClient


@pytest.mark.asyncio
class TestReplicateHairstyleProvider:
    async def test_returns_url_from_file_output_list(self, fake_replicate):
        fake_replicate.output = [FakeFileOutput("https://replicate.delivery/out.jpg")]
        provider = ReplicateHairstyleProvider(api_token="r8_test")

        url = await provider.generate(b"img", GenerationParams(style="Bob"))

        model, payload = fake_replicate.calls[0]
        assert url == "https://replicate.delivery/out.jpg"
        assert model == "black-forest-labs/flux-kontext-pro"
        assert payload["output_format"] == "jpg"
        assert payload["input_image"].read() == b"img"

    async def test_model_alias_is_resolved(self, fake_replicate):
        fake_replicate.output = "https://replicate.delivery/out.jpg"
        provider = ReplicateHairstyleProvider(
            api_token="r8_test", model_aliases={"fast": "owner/fast-model"}
        )

        await provider.generate(b"img", GenerationParams(style="Bob", model="FAST"))

        assert fake_replicate.calls[0][0] == "owner/fast-model"

    async def test_sdk_errors_are_classified(self, fake_replicate):
        fake_replicate.error = ConnectionError("connection refused")
        provider = ReplicateHairstyleProvider(api_token="r8_test")

        with pytest.raises(ProviderUnavailableError):
            await provider.generate(b"img", GenerationParams(style="Bob"))

    async def test_missing_token_is_rejected_without_calling_sdk(self, fake_replicate):
        provider = ReplicateHairstyleProvider(api_token="")

        with pytest.raises(ProviderRejectedError):
            await provider.generate(b"img", GenerationParams(style="Bob"))

        assert fake_replicate.calls == []

    async def test_empty_output_is_rejected(self, fake_replicate):
        fake_replicate.output = []
        provider = ReplicateHairstyleProvider(api_token="r8_test")

        with pytest.raises(ProviderRejectedError):
            await provider.generate(b"img", GenerationParams(style="Bob"))
