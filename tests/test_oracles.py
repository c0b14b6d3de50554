import json

import pytest
import torch
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import minipoet


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------
@pytest.fixture
def tiny_text():
    return "roses are red\nviolets are blue\n"


@pytest.fixture
def vocab(tiny_text):
    return minipoet.Vocabulary.from_text(tiny_text)


@pytest.fixture
def models_dir(tmp_path, vocab):
    meta = {
        "char_to_idx": vocab.char_to_idx,
        "idx_to_char": {str(i): ch for i, ch in vocab.idx_to_char.items()},
        "vocab_size": vocab.vocab_size,
        "hidden_size": 16,
        "model_info": {"RNN": {"num_layers": 1}, "LSTM": {"num_layers": 2}},
    }
    (tmp_path / "model_metadata.json").write_text(json.dumps(meta), encoding="utf-8")
    return tmp_path


def save_checkpoint(path, vocab, variant, num_layers, prefix=""):
    torch.manual_seed(0)
    model = minipoet.CharRNN(vocab.vocab_size, 16, num_layers, variant)
    state = {prefix + k: v for k, v in model.state_dict().items()}
    torch.save(state, path)
    return model


# ------------------------------------------------------------
# Test: reference model and torch oracle
# ------------------------------------------------------------
@pytest.mark.parametrize("variant", ["RNN", "GRU", "LSTM"])
def test_torch_oracle_contract(vocab, variant):
    model = minipoet.CharRNN(vocab.vocab_size, 16, variant=variant)
    oracle = minipoet.TorchOracle(model)
    topology = minipoet.get_variant(variant).topology

    feeds = {"input_sequence": torch.tensor([[3]], dtype=torch.long)}
    feeds.update(minipoet.init_state(topology, model.num_layers, 16))
    results = oracle(feeds)

    assert results["output"].shape == (1, 1, vocab.vocab_size)
    for name in topology.state_names:
        assert results["new_" + name].shape == (model.num_layers, 1, 16)


def test_lstm_default_layers(vocab):
    model = minipoet.CharRNN(vocab.vocab_size, 16, variant="LSTM")
    assert model.num_layers == 2
    assert isinstance(model.rnn, torch.nn.LSTM)


def test_generate_with_char_rnn(vocab, monkeypatch):
    monkeypatch.setattr("builtins.print", lambda *args, **kwargs: None)
    meta = minipoet.Metadata(vocab, hidden_size=16)
    model = minipoet.CharRNN(vocab.vocab_size, 16, variant="GRU")
    session = minipoet.Session(meta).select_model("GRU", minipoet.TorchOracle(model))

    text = minipoet.generate(session, "roses ", length=20, temperature=0.9,
                             generator=torch.Generator().manual_seed(0))

    assert text.startswith("roses ")
    assert len(text) == len("roses ") + 20
    assert set(text) <= set(vocab.char_to_idx)


# ------------------------------------------------------------
# Test: checkpoint loading
# ------------------------------------------------------------
def test_load_torch_oracle_strips_dataparallel_prefix(tmp_path, vocab, monkeypatch):
    monkeypatch.setattr("builtins.print", lambda *args, **kwargs: None)
    path = tmp_path / "lstm.pt"
    original = save_checkpoint(path, vocab, "LSTM", 2, prefix="module.")

    descriptor = minipoet.ModelDescriptor("LSTM", 16, 2)
    oracle = minipoet.load_torch_oracle(path, descriptor, vocab.vocab_size)

    for k, v in original.state_dict().items():
        assert torch.equal(oracle.model.state_dict()[k], v)


def test_load_torch_oracle_missing_file(tmp_path, vocab):
    descriptor = minipoet.ModelDescriptor("RNN", 16)
    with pytest.raises(minipoet.ModelLoadError):
        minipoet.load_torch_oracle(tmp_path / "nope.pt", descriptor, vocab.vocab_size)


def test_load_torch_oracle_rejects_foreign_checkpoint(tmp_path, vocab, monkeypatch):
    monkeypatch.setattr("builtins.print", lambda *args, **kwargs: None)
    path = tmp_path / "other.pt"
    torch.save({"encoder.weight": torch.zeros(4, 4), "head.bias": torch.zeros(4)}, path)

    descriptor = minipoet.ModelDescriptor("LSTM", 16, 2)
    with pytest.raises(minipoet.ModelLoadError, match="no tensors matching"):
        minipoet.load_torch_oracle(path, descriptor, vocab.vocab_size)


# ------------------------------------------------------------
# Test: ONNX Runtime oracle
# ------------------------------------------------------------
class FlatStateRNN(torch.nn.Module):
    """CharRNN with the state passed as separate tensors, as the exported graphs take it."""

    def __init__(self, model):
        super().__init__()
        self.model = model

    def forward(self, x, *state):
        hidden = state[0] if len(state) == 1 else tuple(state)
        scores, new_hidden = self.model(x, hidden)
        if not isinstance(new_hidden, tuple):
            new_hidden = (new_hidden,)
        return (scores, *new_hidden)


def export_onnx(path, vocab, variant):
    torch.manual_seed(0)
    model = minipoet.CharRNN(vocab.vocab_size, 16, variant=variant).eval()
    topology = model.variant.topology
    names = list(topology.state_names)

    x = torch.tensor([[0]], dtype=torch.long)
    state = minipoet.init_state(topology, model.num_layers, 16)
    torch.onnx.export(
        FlatStateRNN(model),
        (x, *[state[name] for name in names]),
        str(path),
        input_names=["input_sequence", *names],
        output_names=["output", *[topology.updated_name(name) for name in names]],
        dynamo=False,
    )
    return model


@pytest.mark.parametrize("variant", ["RNN", "LSTM"])
def test_generate_with_onnx_oracle(tmp_path, vocab, variant, monkeypatch):
    pytest.importorskip("onnxruntime")
    monkeypatch.setattr("builtins.print", lambda *args, **kwargs: None)
    path = tmp_path / f"{variant}_text_generator.onnx"
    model = export_onnx(path, vocab, variant)

    oracle = minipoet.OnnxOracle(path)
    meta = minipoet.Metadata(vocab, hidden_size=16)
    session = minipoet.Session(meta).select_model(variant, oracle)

    # one step through ONNX Runtime agrees with the torch model
    topology = model.variant.topology
    feeds = {"input_sequence": torch.tensor([[2]], dtype=torch.long)}
    feeds.update(minipoet.init_state(topology, model.num_layers, 16))
    onnx_results = oracle(feeds)
    torch_results = minipoet.TorchOracle(model)(feeds)
    assert set(onnx_results) >= set(torch_results)
    for name, tensor in torch_results.items():
        assert torch.allclose(onnx_results[name], tensor, atol=1e-5)

    text = minipoet.generate(session, "ro", length=12, temperature=0.9,
                             generator=torch.Generator().manual_seed(0))
    assert len(text) == len("ro") + 12
    assert set(text) <= set(vocab.char_to_idx)


def test_session_load_from_checkpoint(models_dir, vocab, monkeypatch):
    monkeypatch.setattr("builtins.print", lambda *args, **kwargs: None)
    path = models_dir / "lstm.pt"
    save_checkpoint(path, vocab, "LSTM", 2)

    session = minipoet.Session.load(models_dir, "lstm", checkpoint=path)

    assert session.is_ready
    assert session.descriptor.name == "LSTM"
    assert session.descriptor.topology is minipoet.PAIRED
    assert session.descriptor.num_layers == 2


def test_session_load_missing_metadata(tmp_path):
    with pytest.raises(minipoet.MetadataError):
        minipoet.Session.load(tmp_path, "RNN")


def test_select_model_needs_metadata():
    with pytest.raises(minipoet.NotReadyError):
        minipoet.Session().select_model("RNN", oracle=lambda feeds: {})


# ------------------------------------------------------------
# Test: CLI
# ------------------------------------------------------------
def test_cli_generates_from_checkpoint(models_dir, vocab, capsys):
    path = models_dir / "rnn.pt"
    save_checkpoint(path, vocab, "RNN", 1)

    code = minipoet.main([
        "--models-dir", str(models_dir),
        "--model", "RNN",
        "--checkpoint", str(path),
        "--seed", "roses",
        "--length", "12",
        "--rng-seed", "0",
    ])

    out = capsys.readouterr().out
    assert code == 0
    assert "=== GENERATED TEXT ===" in out
    assert "roses" in out


def test_cli_stream(models_dir, vocab, capsys):
    path = models_dir / "gru.pt"
    save_checkpoint(path, vocab, "GRU", 1)

    code = minipoet.main([
        "--models-dir", str(models_dir),
        "--model", "GRU",
        "--checkpoint", str(path),
        "--seed", "",
        "--length", "8",
        "--stream",
    ])

    out = capsys.readouterr().out
    assert code == 0
    # empty seed is replaced by the default before streaming
    assert "The " in out


def test_cli_reports_errors(models_dir, capsys):
    # no .onnx file next to the metadata
    code = minipoet.main(["--models-dir", str(models_dir), "--model", "GRU", "--length", "5"])
    assert code == 1
    assert "[ERROR]" in capsys.readouterr().out


def test_cli_rejects_bad_temperature():
    with pytest.raises(SystemExit):
        minipoet.main(["--temperature", "0"])
