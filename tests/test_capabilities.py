"""Tests for the model capability table and the model catalog."""

import json

from chatrelay.chat.capabilities import ModelCapabilities, ModelCatalog, ModelInfo


class TestModelCapabilities:
    def test_reasoning_family(self, settings):
        caps = ModelCapabilities(settings)
        assert caps.is_reasoning("deepseek-r1")
        assert caps.is_reasoning("DeepSeek-Chat")
        assert not caps.is_reasoning("llama3")
        assert caps.reasoning_temperature == 0.6

    def test_inline_documents(self, settings):
        caps = ModelCapabilities(settings)
        assert caps.inlines_documents("Qwen2.5")
        assert not caps.inlines_documents("llama3")

    def test_vision_marker_wins_everywhere(self, settings):
        caps = ModelCapabilities(settings)
        assert caps.is_vision("ollama", "llama3.2-vision")
        assert caps.is_vision("openai", "some-vision-model")

    def test_remote_suppliers(self, settings):
        caps = ModelCapabilities(settings)
        assert caps.is_vision("openai", "gpt-4o")
        assert caps.is_vision("aliyun", "qwen-vl-max")
        assert not caps.is_vision("deepseek", "deepseek-chat")
        assert not caps.is_vision("aliyun", "qwen-max")

    def test_local_models_from_capability_list(self, make_settings, tmp_path):
        model_list = tmp_path / "models.json"
        model_list.write_text(json.dumps([
            {"name": "llava", "full_name": "llava:7b", "capability": ["vision", "chat"]},
            {"name": "llama3", "full_name": "llama3:8b", "capability": ["chat"]},
        ]))
        caps = ModelCapabilities(make_settings(ollama_model_list=str(model_list)))

        assert caps.is_vision("ollama", "llava")
        assert caps.is_vision("ollama", "llava:7b")
        assert not caps.is_vision("ollama", "llama3")
        assert not caps.is_vision("ollama", "mistral")

    def test_missing_capability_list(self, settings):
        caps = ModelCapabilities(settings)
        assert not caps.is_vision("ollama", "llava")

    def test_malformed_capability_list(self, make_settings, tmp_path):
        model_list = tmp_path / "models.json"
        model_list.write_text("{not json")
        caps = ModelCapabilities(make_settings(ollama_model_list=str(model_list)))
        assert not caps.is_vision("ollama", "llava")


class TestModelCatalog:
    def test_context_length_longest_family_wins(self, make_settings):
        catalog = ModelCatalog(make_settings(context_lengths={"qwen": 32768, "qwen2.5": 131072}))
        assert catalog.context_length("qwen2.5:7b") == 131072
        assert catalog.context_length("Qwen-Max") == 32768
        assert catalog.context_length("llama3") == 4096

    def test_get_unknown_model_defaults_to_local(self, settings):
        catalog = ModelCatalog(settings)
        info = catalog.get("llama:3b")
        assert info.supplier_name == "ollama"
        assert info.model == "llama:3b"
        assert info.context_length == 4096

    def test_refresh_and_clear(self, settings):
        catalog = ModelCatalog(settings)
        catalog.refresh([ModelInfo(title="Llama", supplier_name="ollama", model="llama:3b", context_length=8192)])
        assert catalog.get("llama:3b").context_length == 8192

        catalog.clear()
        assert catalog.get("llama:3b").title == "llama:3b"

    def test_load_local_falls_back_to_family_table(self, make_settings):
        catalog = ModelCatalog(make_settings(context_lengths={"qwen": 32768}))
        catalog.load_local([
            {"name": "llama3.1:8b", "size": 4920753328, "context_length": 131072},
            {"name": "qwen:7b", "size": 10, "context_length": 0},
        ])

        llama = catalog.get("llama3.1:8b")
        assert (llama.supplier_name, llama.size, llama.context_length) == ("ollama", 4920753328, 131072)
        assert catalog.get("qwen:7b").context_length == 32768

    def test_usage_counters(self, settings):
        catalog = ModelCatalog(settings)
        catalog.record_usage("ollama", "llama:3b")
        catalog.record_usage("deepseek", "deepseek-chat")
        assert catalog.record_usage("ollama", "llama:3b") == 2

        totals = catalog.usage_totals()
        assert totals[0] == {"supplier_name": "ollama", "model": "llama:3b", "total": 2}
        assert totals[1]["total"] == 1
