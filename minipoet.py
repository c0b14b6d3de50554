"""
minipoet.py — Character-level poetry generation from recurrent models.

This module drives a trained recurrent language model (RNN, GRU or LSTM)
one character at a time:

1. A character vocabulary loaded from model_metadata.json
2. A closed table of model variants and their recurrent state layouts
3. Temperature-scaled softmax sampling over the model's output scores
4. The generation loop that feeds every sampled character back as input
5. Oracles: an ONNX Runtime session or a PyTorch CharRNN checkpoint
6. A small command-line front end

The model itself is treated as an opaque "oracle": any callable that takes a
dict of named input tensors and returns a dict of named output tensors.

Run generation from exported ONNX models:
    python minipoet.py --model LSTM --seed "The moon" --length 300

Run generation from a PyTorch checkpoint:
    python minipoet.py --model GRU --checkpoint gru.pt --temperature 0.6

Dependencies:
    pip install torch
    pip install onnxruntime numpy    # only for .onnx models
"""

import argparse
import json
import sys
from pathlib import Path

import torch
import torch.nn as nn

# ---------------------------------------------------------
# DEFAULTS
# ---------------------------------------------------------
DEFAULT_SEED = "The "
DEFAULT_LENGTH = 200
DEFAULT_TEMPERATURE = 0.8
DEFAULT_MODEL = "LSTM"

MODELS_DIR = "models"
METADATA_FILENAME = "model_metadata.json"
MODEL_FILENAME = "{name}_text_generator.onnx"

# Names of the tensors exchanged with the oracle.
INPUT_NAME = "input_sequence"
OUTPUT_NAME = "output"


# ---------------------------------------------------------
# ERRORS
# ---------------------------------------------------------
class GenerationError(Exception):
    """Base class for every failure surfaced by this module."""


class NotReadyError(GenerationError):
    """Generation was requested before a model and its metadata were loaded."""


class OracleInvocationError(GenerationError):
    """The model call failed or returned something unusable."""


class DecodeLookupError(GenerationError, LookupError):
    """A sampled index has no character in the vocabulary."""


class MetadataError(GenerationError, ValueError):
    """model_metadata.json is missing required fields or is unreadable."""


class ModelLoadError(GenerationError):
    """A model file or checkpoint could not be loaded."""


class UnknownModelError(GenerationError, KeyError):
    """The requested model variant is not in MODEL_VARIANTS."""

    def __str__(self):
        # KeyError quotes its argument; keep the message readable
        return str(self.args[0]) if self.args else ""


class UnknownCharacterError(GenerationError, ValueError):
    """Strict encoding met characters outside the vocabulary."""

    def __init__(self, chars):
        self.chars = list(chars)
        super().__init__(
            "characters not in vocabulary: " + ", ".join(repr(c) for c in self.chars)
        )


class EmptySeedError(GenerationError, ValueError):
    """No character of the seed text is known to the vocabulary."""


class GenerationCancelled(GenerationError):
    """The caller asked the loop to stop between two steps."""


# ---------------------------------------------------------
# VOCABULARY
# ---------------------------------------------------------
class Vocabulary:
    """
    Bidirectional character <-> index mapping.

    The mapping is normally read from the metadata file written when the model
    was exported, so the indices line up with the model's embedding rows and
    output scores. It never changes while a model is selected.

    Example:
        vocab = Vocabulary({"a": 0, "b": 1}, {0: "a", 1: "b"})
        vocab.encode("abz")    # -> [0, 1]   ('z' is unknown and dropped)
        vocab.decode(1)        # -> "b"
    """

    def __init__(self, char_to_idx, idx_to_char, vocab_size=None):
        """
        Args:
            char_to_idx (dict[str, int]): character -> index
            idx_to_char (dict[int, str]): index -> character (inverse mapping)
            vocab_size (int): number of output scores the model produces.
                              Defaults to the size of idx_to_char.
        """
        self.char_to_idx = dict(char_to_idx)
        self.idx_to_char = {int(i): ch for i, ch in idx_to_char.items()}
        self.vocab_size = len(self.idx_to_char) if vocab_size is None else int(vocab_size)

    @classmethod
    def from_text(cls, text):
        """Build a vocabulary from the sorted unique characters of a corpus."""
        chars = sorted(set(text))
        char_to_idx = {ch: i for i, ch in enumerate(chars)}
        idx_to_char = {i: ch for ch, i in char_to_idx.items()}
        return cls(char_to_idx, idx_to_char)

    def __len__(self):
        return self.vocab_size

    def __contains__(self, ch):
        return ch in self.char_to_idx

    def unknown_chars(self, text):
        """Distinct characters of `text` missing from the vocabulary, first-seen order."""
        seen = []
        for ch in text:
            if ch not in self.char_to_idx and ch not in seen:
                seen.append(ch)
        return seen

    def encode(self, text, strict=False):
        """
        Convert text into a list of indices.

        Characters missing from the vocabulary are dropped without notice,
        which can shorten the seed or leave it empty. Pass strict=True to get
        an UnknownCharacterError listing them instead.

        Args:
            text (str): text to encode
            strict (bool): raise instead of dropping unknown characters

        Returns:
            list[int]: one index per known character of `text`
        """
        if strict:
            unknown = self.unknown_chars(text)
            if unknown:
                raise UnknownCharacterError(unknown)
        return [self.char_to_idx[c] for c in text if c in self.char_to_idx]

    def decode(self, index):
        """Return the character for one index; DecodeLookupError if there is none."""
        try:
            return self.idx_to_char[int(index)]
        except KeyError:
            raise DecodeLookupError(
                f"index {index} has no character (vocab_size={self.vocab_size})"
            ) from None

    def decode_all(self, indices):
        return "".join(self.decode(i) for i in indices)


# ---------------------------------------------------------
# MODEL VARIANTS AND RECURRENT STATE
# ---------------------------------------------------------
# Recurrent cells differ in how much state they carry between steps:
#
#   RNN, GRU  -> one hidden tensor h          ("single" topology)
#   LSTM      -> hidden h plus cell c         ("paired" topology)
#
# Every tensor has the layout PyTorch uses for h0/c0:
#   (num_layers, batch=1, hidden_size)
#
# The exported models name their state inputs after these tensors and return
# the updated state as new_<name>, e.g. hidden_c -> new_hidden_c.
class StateTopology:
    """Names of the state tensors a model variant reads and writes."""

    def __init__(self, name, state_names):
        self.name = name
        self.state_names = tuple(state_names)

    @staticmethod
    def updated_name(state_name):
        return "new_" + state_name

    def __repr__(self):
        return f"StateTopology({self.name!r}, {self.state_names!r})"


SINGLE = StateTopology("single", ("hidden",))
PAIRED = StateTopology("paired", ("hidden_h", "hidden_c"))


class ModelVariant:
    """
    One row of the model-variant table.

    Args:
        name (str): variant name as used in file names and metadata ("LSTM")
        topology (StateTopology): SINGLE or PAIRED
        default_layers (int): layer count used when metadata has no override
        cell (type): torch.nn recurrent class for the reference CharRNN
    """

    def __init__(self, name, topology, default_layers, cell):
        self.name = name
        self.topology = topology
        self.default_layers = default_layers
        self.cell = cell

    def __repr__(self):
        return f"ModelVariant({self.name!r})"


# Adding a variant means adding a row here and nothing else.
MODEL_VARIANTS = {
    "RNN": ModelVariant("RNN", SINGLE, 1, nn.RNN),
    "GRU": ModelVariant("GRU", SINGLE, 1, nn.GRU),
    "LSTM": ModelVariant("LSTM", PAIRED, 2, nn.LSTM),
}


def get_variant(name):
    """Look up a variant by name (case-insensitive)."""
    if isinstance(name, ModelVariant):
        return name
    key = str(name).strip().upper()
    if key not in MODEL_VARIANTS:
        raise UnknownModelError(
            f"unknown model {name!r}; expected one of {', '.join(MODEL_VARIANTS)}"
        )
    return MODEL_VARIANTS[key]


class ModelDescriptor:
    """Variant plus the state dimensions needed to drive it."""

    def __init__(self, variant, hidden_size, num_layers=None):
        self.variant = get_variant(variant)
        self.hidden_size = int(hidden_size)
        self.num_layers = int(num_layers) if num_layers else self.variant.default_layers

    @property
    def name(self):
        return self.variant.name

    @property
    def topology(self):
        return self.variant.topology

    def __repr__(self):
        return (
            f"ModelDescriptor({self.name!r}, hidden_size={self.hidden_size}, "
            f"num_layers={self.num_layers})"
        )


def init_state(topology, num_layers, hidden_size):
    """
    Allocate a zero recurrent state for one generation run.

    Args:
        topology (StateTopology): SINGLE -> {"hidden"},
                                  PAIRED -> {"hidden_h", "hidden_c"}
        num_layers (int): stacked recurrent layers
        hidden_size (int): width of each layer's state

    Returns:
        dict[str, Tensor]: float32 zeros of shape (num_layers, 1, hidden_size)

    Example:
        state = init_state(PAIRED, 2, 128)
        state["hidden_h"].shape   # torch.Size([2, 1, 128])
    """
    return {
        name: torch.zeros(num_layers, 1, hidden_size, dtype=torch.float32)
        for name in topology.state_names
    }


def advance_state(topology, results):
    """
    Take the updated state from one oracle call.

    The old state is replaced wholesale by the oracle's new_<name> outputs;
    nothing is carried over or blended.
    """
    state = {}
    for name in topology.state_names:
        key = topology.updated_name(name)
        try:
            state[name] = results[key]
        except (KeyError, TypeError):
            raise OracleInvocationError(f"model returned no {key!r} output") from None
    return state


# ---------------------------------------------------------
# SAMPLING
# ---------------------------------------------------------
def temperature_softmax(scores, vocab_size, temperature):
    """
    Turn raw model scores into a probability distribution over the vocabulary.

    Process:
        1. Keep the last vocab_size scores (the model's output ends with one
           score per character)
        2. Divide by temperature
           - temperature < 1: sharper, close to argmax as it approaches 0
           - temperature = 1: the model's own distribution
           - temperature > 1: flatter, towards uniform
        3. Subtract the maximum before exponentiating so large scores cannot
           overflow, then normalise

    The temperature is not checked here; callers must pass a value > 0.

    Args:
        scores: tensor or sequence of raw scores (any shape)
        vocab_size (int): number of characters
        temperature (float): sampling temperature

    Returns:
        Tensor: float64 probabilities, shape (vocab_size,), summing to 1

    Example:
        temperature_softmax([2.0, 1.0, 0.5], 3, 1.0)
        # tensor([0.6285, 0.2312, 0.1402])
    """
    logits = torch.as_tensor(scores).detach().reshape(-1)[-vocab_size:]
    scaled = logits.to(torch.float64) / temperature
    scaled = scaled - scaled.max()
    exp = torch.exp(scaled)
    return exp / exp.sum()


def sample_index(probs, u=None, generator=None):
    """
    Draw one index from a probability vector by inverse-CDF sampling.

    A uniform value u in [0, 1) is compared against the running sum of the
    probabilities in index order; the first index whose running sum reaches u
    wins. Equal probabilities are therefore resolved by position, not at
    random.

    Rounding can leave the total a hair below 1.0, so a u close to 1 may
    never be reached. The last index is returned in that case.

    Args:
        probs (Tensor): 1-D probabilities
        u (float): optional fixed threshold (mainly for tests)
        generator (torch.Generator): optional RNG for reproducible runs

    Returns:
        int: sampled index in [0, len(probs))
    """
    if u is None:
        u = torch.rand((), generator=generator, dtype=torch.float64).item()
    cumulative = torch.cumsum(probs.to(torch.float64), dim=0)
    threshold = torch.tensor([u], dtype=torch.float64)
    index = int(torch.searchsorted(cumulative, threshold)[0])
    return min(index, cumulative.numel() - 1)


# ---------------------------------------------------------
# METADATA
# ---------------------------------------------------------
class Metadata:
    """
    Contents of model_metadata.json, written next to the exported models.

    Expected layout:
        {
          "char_to_idx": {"a": 0, "b": 1, ...},
          "idx_to_char": {"0": "a", "1": "b", ...},
          "vocab_size": 65,
          "hidden_size": 256,
          "model_info": {"LSTM": {"num_layers": 2}}      # optional
        }
    """

    REQUIRED = ("char_to_idx", "idx_to_char", "vocab_size", "hidden_size")

    def __init__(self, vocab, hidden_size, model_info=None):
        self.vocab = vocab
        self.hidden_size = hidden_size
        self.model_info = model_info or {}

    @property
    def vocab_size(self):
        return self.vocab.vocab_size

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise MetadataError("metadata must be a JSON object")

        missing = [key for key in cls.REQUIRED if key not in data]
        if missing:
            raise MetadataError("metadata is missing required field(s): " + ", ".join(missing))

        vocab_size = _positive_int(data, "vocab_size")
        hidden_size = _positive_int(data, "hidden_size")

        char_to_idx = data["char_to_idx"]
        idx_to_char = data["idx_to_char"]
        if not isinstance(char_to_idx, dict) or not isinstance(idx_to_char, dict):
            raise MetadataError("char_to_idx and idx_to_char must be JSON objects")
        try:
            # JSON object keys are always strings
            idx_to_char = {int(i): ch for i, ch in idx_to_char.items()}
            char_to_idx = {ch: int(i) for ch, i in char_to_idx.items()}
        except (TypeError, ValueError) as e:
            raise MetadataError(f"vocabulary indices must be integers: {e}") from e

        model_info = _model_info(data.get("model_info") or {})

        vocab = Vocabulary(char_to_idx, idx_to_char, vocab_size)
        uncovered = [i for i in range(vocab_size) if i not in vocab.idx_to_char]
        if uncovered:
            print(f"[WARN] {len(uncovered)} of {vocab_size} indices have no character in idx_to_char.")
        return cls(vocab, hidden_size, model_info)

    @classmethod
    def from_file(cls, path):
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise MetadataError(f"could not read metadata from {path}: {e}") from e
        meta = cls.from_dict(data)
        print(f"[INFO] Loaded metadata from {path} (vocab_size={meta.vocab_size}, hidden_size={meta.hidden_size}).")
        return meta

    def describe(self, model_name):
        """
        Build the descriptor for one variant.

        The layer count comes from model_info[<name>]["num_layers"] when the
        exporter recorded it, otherwise from the variant's default
        (RNN and GRU: 1, LSTM: 2).
        """
        variant = get_variant(model_name)
        info = self.model_info.get(variant.name) or {}
        return ModelDescriptor(variant, self.hidden_size, info.get("num_layers"))


def _model_info(raw):
    """Per-variant overrides keyed by upper-cased variant name; num_layers checked."""
    if not isinstance(raw, dict):
        raise MetadataError("model_info must be a JSON object")
    model_info = {}
    for name, info in raw.items():
        if not isinstance(info, dict):
            raise MetadataError(f"model_info[{name!r}] must be a JSON object, got {info!r}")
        info = dict(info)
        if info.get("num_layers") is not None:
            info["num_layers"] = _positive_int(info, "num_layers", f"model_info[{name!r}].num_layers")
        model_info[str(name).strip().upper()] = info
    return model_info


def _positive_int(data, key, label=None):
    value = data[key]
    label = label or key
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise MetadataError(f"{label} must be a positive integer, got {value!r}")
    return value


# ---------------------------------------------------------
# ORACLES
# ---------------------------------------------------------
# An oracle is any callable with this contract:
#
#   feeds = {
#       "input_sequence": int64 tensor (1, 1),
#       "hidden": float32 (L, 1, H)                        # SINGLE
#       or "hidden_h", "hidden_c": float32 (L, 1, H)       # PAIRED
#   }
#   results = oracle(feeds)
#   results["output"]       -> scores ending in vocab_size values
#   results["new_hidden"]   -> or new_hidden_h / new_hidden_c
class CharRNN(nn.Module):
    """
    Reference recurrent character model matching the exported ONNX graphs.

    Architecture:
        index -> Embedding(vocab_size, hidden_size)
              -> RNN / GRU / LSTM (num_layers, batch_first)
              -> Linear(hidden_size, vocab_size) -> scores
    """

    def __init__(self, vocab_size, hidden_size, num_layers=None, variant=DEFAULT_MODEL):
        super().__init__()
        self.variant = get_variant(variant)
        self.num_layers = num_layers or self.variant.default_layers
        self.embedding = nn.Embedding(vocab_size, hidden_size)
        self.rnn = self.variant.cell(hidden_size, hidden_size, self.num_layers, batch_first=True)
        self.decoder = nn.Linear(hidden_size, vocab_size)

    def forward(self, x, hidden=None):
        # x: (B, T) -> scores: (B, T, vocab_size)
        e = self.embedding(x)
        o, hidden = self.rnn(e, hidden)
        return self.decoder(o), hidden


class TorchOracle:
    """Adapt a CharRNN (or any module with the same forward) to the oracle contract."""

    def __init__(self, model, topology=None):
        self.model = model
        self.topology = topology or model.variant.topology
        self.model.eval()

    @torch.no_grad()
    def __call__(self, feeds):
        names = self.topology.state_names
        if len(names) == 1:
            hidden = feeds[names[0]]
        else:
            hidden = tuple(feeds[name] for name in names)

        scores, new_hidden = self.model(feeds[INPUT_NAME], hidden)

        if not isinstance(new_hidden, tuple):
            new_hidden = (new_hidden,)
        results = {OUTPUT_NAME: scores}
        for name, tensor in zip(names, new_hidden):
            results[self.topology.updated_name(name)] = tensor
        return results


class OnnxOracle:
    """
    Run an exported <NAME>_text_generator.onnx file with ONNX Runtime.

    onnxruntime is imported here rather than at module level so the rest of
    the module works with PyTorch alone.
    """

    def __init__(self, path, providers=None):
        try:
            import onnxruntime as ort
        except ImportError as e:
            raise ImportError(
                "ONNX models need onnxruntime. Install with: pip install onnxruntime numpy"
            ) from e
        self.path = Path(path)
        if not self.path.exists():
            raise ModelLoadError(f"model file not found: {self.path}")
        try:
            self.session = ort.InferenceSession(
                str(self.path), providers=providers or ["CPUExecutionProvider"]
            )
        except Exception as e:
            raise ModelLoadError(f"could not load model {self.path}: {e}") from e
        self.output_names = [o.name for o in self.session.get_outputs()]

    def __call__(self, feeds):
        arrays = {name: t.detach().cpu().numpy() for name, t in feeds.items()}
        outputs = self.session.run(self.output_names, arrays)
        return {name: torch.as_tensor(out) for name, out in zip(self.output_names, outputs)}


def load_torch_oracle(path, descriptor, vocab_size):
    """
    Build a CharRNN for `descriptor` and load a state_dict checkpoint into it.

    Loader behaviour:
        - Accepts a bare state_dict or a bundle with a "model_state" entry
        - Strips the `module.` prefix saved by DataParallel
        - Keeps only tensors whose names and shapes match the model
        - Prints how many tensors matched so hyperparameter or vocabulary
          mismatches are visible; a checkpoint with no match at all is an error
    """
    model = CharRNN(vocab_size, descriptor.hidden_size, descriptor.num_layers, descriptor.variant)
    try:
        state = torch.load(path, map_location="cpu")
    except Exception as e:
        raise ModelLoadError(f"could not load checkpoint {path}: {e}") from e

    if isinstance(state, dict) and "model_state" in state:
        state = state["model_state"]
    if not isinstance(state, dict):
        raise ModelLoadError(f"checkpoint {path} does not contain a state_dict")
    if any(k.startswith("module.") for k in state.keys()):
        state = {k.replace("module.", "", 1): v for k, v in state.items()}

    model_state = model.state_dict()
    filtered_state = {
        k: v for k, v in state.items()
        if k in model_state and torch.is_tensor(v) and v.size() == model_state[k].size()
    }
    if not filtered_state:
        raise ModelLoadError(
            f"checkpoint {path} has no tensors matching a {descriptor.name} model "
            f"(hidden_size={descriptor.hidden_size}, num_layers={descriptor.num_layers})"
        )

    missing_keys = set(model_state) - set(filtered_state)
    unexpected_keys = set(state) - set(model_state)
    print(f"[INFO] Loaded {len(filtered_state)}/{len(model_state)} tensors from {path}.")
    if missing_keys:
        print(f"[WARN] {len(missing_keys)} model parameters were not found in the checkpoint; they keep their initialized values.")
    if unexpected_keys:
        print(f"[WARN] {len(unexpected_keys)} unexpected keys were present in the checkpoint.")

    model_state.update(filtered_state)
    model.load_state_dict(model_state)
    return TorchOracle(model, descriptor.topology)


# ---------------------------------------------------------
# SESSION
# ---------------------------------------------------------
class Session:
    """
    The currently selected model: its oracle, metadata and descriptor.

    A session is built when a model is selected and reused for every
    generation request against that model. Generation only reads from it, so
    one session can serve several independent calls.
    """

    def __init__(self, metadata=None, oracle=None, descriptor=None):
        self.metadata = metadata
        self.oracle = oracle
        self.descriptor = descriptor

    @property
    def is_ready(self):
        return self.oracle is not None and self.metadata is not None

    @property
    def vocab(self):
        return self.metadata.vocab if self.metadata is not None else None

    def select_model(self, model_name, oracle):
        """Attach an oracle for `model_name`; metadata must already be loaded."""
        if self.metadata is None:
            raise NotReadyError("metadata must be loaded before selecting a model")
        self.descriptor = self.metadata.describe(model_name)
        self.oracle = oracle
        return self

    @classmethod
    def load(cls, models_dir=MODELS_DIR, model_name=DEFAULT_MODEL, checkpoint=None):
        """
        Load metadata and a model from disk.

        Args:
            models_dir: directory holding model_metadata.json and, without a
                        checkpoint, <NAME>_text_generator.onnx
            model_name (str): RNN, GRU or LSTM
            checkpoint: optional PyTorch state_dict to use instead of ONNX
        """
        models_dir = Path(models_dir)
        metadata = Metadata.from_file(models_dir / METADATA_FILENAME)
        descriptor = metadata.describe(model_name)
        if checkpoint is not None:
            oracle = load_torch_oracle(checkpoint, descriptor, metadata.vocab_size)
        else:
            oracle = OnnxOracle(models_dir / MODEL_FILENAME.format(name=descriptor.name))
        print(f"[INFO] Model {descriptor.name} loaded ({descriptor.num_layers} layer(s), hidden_size={descriptor.hidden_size}).")
        return cls(metadata, oracle, descriptor)


# ---------------------------------------------------------
# GENERATION
# ---------------------------------------------------------
def resolve_seed(seed_text):
    """Empty seeds fall back to DEFAULT_SEED."""
    return seed_text or DEFAULT_SEED


def _prepare(session, seed_text, length, descriptor, strict):
    if session is None or not session.is_ready:
        raise NotReadyError("model or metadata not loaded")
    descriptor = descriptor or session.descriptor
    if descriptor is None:
        raise NotReadyError("no model selected")

    seed = resolve_seed(seed_text)
    seed_ids = session.vocab.encode(seed, strict=strict)
    if length > 0 and not seed_ids:
        raise EmptySeedError(f"no character of the seed {seed!r} is in the vocabulary")
    return seed, seed_ids, descriptor


def _steps(session, last_index, length, temperature, descriptor, generator, should_stop):
    vocab = session.vocab
    topology = descriptor.topology
    state = init_state(topology, descriptor.num_layers, descriptor.hidden_size)

    for step in range(length):
        if should_stop is not None and should_stop():
            raise GenerationCancelled(f"generation cancelled after {step} of {length} characters")

        # === STEP 1: INFERENCE ===
        # Only the last character goes in; everything before it lives in the
        # recurrent state.
        feeds = {INPUT_NAME: torch.tensor([[last_index]], dtype=torch.long)}
        feeds.update(state)
        try:
            results = session.oracle(feeds)
        except Exception as e:
            raise OracleInvocationError(f"model call failed at step {step}: {e}") from e

        # === STEP 2: HAND OVER STATE ===
        state = advance_state(topology, results)

        # === STEP 3: SAMPLE ===
        try:
            scores = results[OUTPUT_NAME]
        except (KeyError, TypeError):
            raise OracleInvocationError(f"model returned no {OUTPUT_NAME!r} output") from None
        if torch.as_tensor(scores).numel() < vocab.vocab_size:
            raise OracleInvocationError(
                f"model returned fewer than vocab_size={vocab.vocab_size} scores"
            )
        probs = temperature_softmax(scores, vocab.vocab_size, temperature)
        last_index = sample_index(probs, generator=generator)

        # === STEP 4: DECODE ===
        yield vocab.decode(last_index)


def stream(session, seed_text="", length=DEFAULT_LENGTH, temperature=DEFAULT_TEMPERATURE,
           descriptor=None, strict=False, generator=None, should_stop=None):
    """
    Like generate(), but yield each new character as soon as it is sampled.

    The seed itself is not yielded (see resolve_seed()). Readiness and seed
    problems are reported when stream() is called; model failures are raised
    from the iteration and end it.
    """
    seed, seed_ids, descriptor = _prepare(session, seed_text, length, descriptor, strict)
    if length <= 0:
        return iter(())
    return _steps(session, seed_ids[-1], length, temperature, descriptor, generator, should_stop)


def generate(session, seed_text="", length=DEFAULT_LENGTH, temperature=DEFAULT_TEMPERATURE,
             descriptor=None, strict=False, generator=None, should_stop=None):
    """
    Generate text one character at a time from a recurrent model.

    Generation process:
        1. Substitute DEFAULT_SEED for an empty seed and encode it
        2. Start from an all-zero recurrent state for the selected variant
        3. Repeat `length` times:
           a. Feed the last index and the current state to the model
           b. Replace the state with the one the model returned
           c. Sample the next index from the temperature-scaled softmax
           d. Decode it and append it to the text
           e. Use the sampled index as the next input
        4. Return seed + generated characters

    Only the last seed character is fed to the model; the state starts at
    zero, so earlier seed characters do not influence the output.

    Args:
        session (Session): loaded model and metadata
        seed_text (str): starting text; "" means DEFAULT_SEED
        length (int): number of characters to add (0 returns the seed as is)
        temperature (float): > 0. Small values approach greedy decoding,
                             large values approach uniform sampling.
        descriptor (ModelDescriptor): overrides session.descriptor
        strict (bool): reject seeds with unknown characters instead of
                       dropping them
        generator (torch.Generator): RNG for reproducible sampling
        should_stop (callable): polled before each step; returning True
                                raises GenerationCancelled

    Returns:
        str: the seed followed by `length` generated characters

    Raises:
        NotReadyError: no model or metadata loaded
        EmptySeedError: no seed character is in the vocabulary
        OracleInvocationError: the model call failed (cause attached)
        DecodeLookupError: a sampled index has no character
        GenerationCancelled: should_stop asked to abort

    Any failure discards the partial text.

    Example:
        session = Session.load("models", "LSTM")
        text = generate(session, "The moon", length=300, temperature=0.7)
    """
    seed, seed_ids, descriptor = _prepare(session, seed_text, length, descriptor, strict)
    if length <= 0:
        return seed
    generated = list(
        _steps(session, seed_ids[-1], length, temperature, descriptor, generator, should_stop)
    )
    return seed + "".join(generated)


# ---------------------------------------------------------
# MAIN CLI
# ---------------------------------------------------------
def build_parser():
    parser = argparse.ArgumentParser(description="Generate poetry with a character-level RNN, GRU or LSTM.")
    parser.add_argument("--model", type=str, default=DEFAULT_MODEL, help="one of: " + ", ".join(MODEL_VARIANTS))
    parser.add_argument("--seed", type=str, default=DEFAULT_SEED, help="starting text")
    parser.add_argument("--length", type=int, default=DEFAULT_LENGTH, help="characters to generate")
    parser.add_argument("--temperature", type=float, default=DEFAULT_TEMPERATURE)
    parser.add_argument("--models-dir", type=str, default=MODELS_DIR)
    parser.add_argument("--checkpoint", type=str, default=None, help="PyTorch state_dict instead of ONNX")
    parser.add_argument("--strict", action="store_true", help="fail on seed characters outside the vocabulary")
    parser.add_argument("--stream", action="store_true", help="print characters as they are generated")
    parser.add_argument("--rng-seed", type=int, default=None)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.temperature <= 0:
        parser.error("--temperature must be greater than 0")
    if args.length < 0:
        parser.error("--length must not be negative")

    generator = None
    if args.rng_seed is not None:
        generator = torch.Generator().manual_seed(args.rng_seed)

    try:
        session = Session.load(args.models_dir, args.model, checkpoint=args.checkpoint)
        options = dict(
            length=args.length,
            temperature=args.temperature,
            strict=args.strict,
            generator=generator,
        )
        if args.stream:
            chars = stream(session, args.seed, **options)
            print(resolve_seed(args.seed), end="", flush=True)
            for ch in chars:
                print(ch, end="", flush=True)
            print()
        else:
            text = generate(session, args.seed, **options)
            print("\n=== GENERATED TEXT ===\n")
            print(text)
    except (GenerationError, ImportError) as e:
        print(f"[ERROR] {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
