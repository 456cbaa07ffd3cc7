"""Layer and data configuration.

Configurations are plain dataclasses. Every sub-parameter of
``LayerParameter`` always exists with its defaults (like an unset protobuf
message), so layers read ``param.pooling_param.kernel_size`` without
``None`` checks.

Loading from mappings:

    param = LayerParameter.from_dict({
        "name": "pool1",
        "type": "pooling",
        "bottom": ["conv1"],
        "top": ["pool1"],
        "pooling_param": {"pool": "max", "kernel_size": 3, "stride": 2},
    })

Enum values parse case-insensitively by member name. Engine strings that do
not name a known engine are kept verbatim so the engine selector can reject
them with the layer's name attached.
"""

from __future__ import annotations

import json
import types
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, List, Mapping, Optional, Union, get_args, get_origin, get_type_hints

from strata.errors import ConfigError

__all__ = [
    "LayerType",
    "Engine",
    "Backend",
    "PoolMethod",
    "EltwiseOp",
    "NormRegion",
    "HingeNorm",
    "FillerParameter",
    "TransformationParameter",
    "AccuracyParameter",
    "ArgMaxParameter",
    "ConcatParameter",
    "ContrastiveLossParameter",
    "ConvolutionParameter",
    "DataParameter",
    "DropoutParameter",
    "DummyDataParameter",
    "EltwiseParameter",
    "ExpParameter",
    "HingeLossParameter",
    "ImageDataParameter",
    "InfogainLossParameter",
    "InnerProductParameter",
    "LRNParameter",
    "MemoryDataParameter",
    "MVNParameter",
    "PoolingParameter",
    "PowerParameter",
    "ReLUParameter",
    "SigmoidParameter",
    "SliceParameter",
    "SoftmaxParameter",
    "TanHParameter",
    "ThresholdParameter",
    "LayerParameter",
    "load_layer_parameters",
]


# =============================================================================
# ENUMS
# =============================================================================


class LayerType(IntEnum):
    """Operation type of a layer. Values are stable wire numbers."""

    NONE = 0
    ABSVAL = 35
    ACCURACY = 1
    ARGMAX = 30
    BNLL = 2
    CONCAT = 3
    CONTRASTIVE_LOSS = 37
    CONVOLUTION = 4
    DATA = 5
    DROPOUT = 6
    DUMMY_DATA = 32
    EUCLIDEAN_LOSS = 7
    ELTWISE = 25
    EXP = 38
    FLATTEN = 8
    HDF5_DATA = 9
    HDF5_OUTPUT = 10
    HINGE_LOSS = 28
    IM2COL = 11
    IMAGE_DATA = 12
    INFOGAIN_LOSS = 13
    INNER_PRODUCT = 14
    LRN = 15
    MEMORY_DATA = 29
    MULTINOMIAL_LOGISTIC_LOSS = 16
    MVN = 34
    POOLING = 17
    POWER = 26
    RELU = 18
    SIGMOID = 19
    SIGMOID_CROSS_ENTROPY_LOSS = 27
    SILENCE = 36
    SOFTMAX = 20
    SOFTMAX_LOSS = 21
    SPLIT = 22
    SLICE = 33
    TANH = 23
    WINDOW_DATA = 24
    THRESHOLD = 31


class Engine(str, Enum):
    """Implementation choice for layers that have more than one."""

    DEFAULT = "default"
    TORCH = "torch"
    CUDNN = "cudnn"

    @classmethod
    def coerce(cls, value: Any) -> "Engine | Any":
        """Known engines become members; anything else is returned unchanged."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            token = value.strip().lower()
            for member in cls:
                if member.value == token:
                    return member
        return value


class Backend(IntEnum):
    """Key-value store behind a dataset."""

    LEVELDB = 0
    LMDB = 1

    @classmethod
    def from_string(cls, name: str) -> "Backend | None":
        """Exact match on the canonical lowercase name, else ``None``."""
        for member in cls:
            if member.name.lower() == name:
                return member
        return None


class PoolMethod(str, Enum):
    MAX = "max"
    AVE = "ave"
    STOCHASTIC = "stochastic"


class EltwiseOp(str, Enum):
    PROD = "prod"
    SUM = "sum"
    MAX = "max"


class NormRegion(str, Enum):
    ACROSS_CHANNELS = "across_channels"
    WITHIN_CHANNEL = "within_channel"


class HingeNorm(str, Enum):
    L1 = "l1"
    L2 = "l2"


# =============================================================================
# PARSING
# =============================================================================


def _parse_enum(enum_cls: type[Enum], value: Any, where: str) -> Any:
    if enum_cls is Engine:
        return Engine.coerce(value)
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        token = value.strip()
        for member in enum_cls:
            if member.name.lower() == token.lower():
                return member
            if isinstance(member.value, str) and member.value == token.lower():
                return member
    elif isinstance(value, int) and not isinstance(value, bool):
        try:
            return enum_cls(value)
        except ValueError:
            pass
    choices = ", ".join(m.name for m in enum_cls)
    raise ConfigError(f"{where}: {value!r} is not a valid {enum_cls.__name__} (choices: {choices})")


def _convert(tp: Any, value: Any, where: str) -> Any:
    origin = get_origin(tp)
    if origin is Union or origin is types.UnionType:
        if value is None:
            return None
        inner = [a for a in get_args(tp) if a is not type(None)]
        return _convert(inner[0], value, where)
    if origin in (list, List):
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
            value = [value]
        (item_tp,) = get_args(tp) or (Any,)
        return [_convert(item_tp, v, f"{where}[{i}]") for i, v in enumerate(value)]
    if isinstance(tp, type) and issubclass(tp, Enum):
        return _parse_enum(tp, value, where)
    if isinstance(tp, type) and is_dataclass(tp):
        if isinstance(value, tp):
            return value
        if not isinstance(value, Mapping):
            raise ConfigError(f"{where}: expected a mapping for {tp.__name__}, got {type(value).__name__}")
        return tp.from_dict(value, where=where)
    try:
        if tp is bool:
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if tp is int:
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(value)
            return int(value)
        if tp is float:
            return float(value)
        if tp is str:
            return str(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{where}: cannot convert {value!r} to {tp.__name__}") from None
    return value


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass
class BaseParam:
    """Dict round-tripping shared by every parameter dataclass."""

    @classmethod
    def from_dict(cls, config: Mapping[str, Any], *, where: str | None = None):
        where = where or cls.__name__
        hints = get_type_hints(cls)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            raise ConfigError(f"{where}: unknown field(s) {', '.join(unknown)}")
        kwargs = {
            name: _convert(hints[name], value, f"{where}.{name}")
            for name, value in config.items()
        }
        return cls(**kwargs)

    def to_dict(self) -> dict:
        """Only fields that differ from their defaults."""
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.default is not MISSING:
                default = f.default
            elif f.default_factory is not MISSING:
                default = f.default_factory()
            else:
                default = MISSING
            if value == default:
                continue
            if isinstance(value, BaseParam):
                out[f.name] = value.to_dict()
            elif isinstance(value, list) and value and isinstance(value[0], BaseParam):
                out[f.name] = [v.to_dict() for v in value]
            else:
                out[f.name] = _plain(value)
        return out


def _two(
    both: int,
    h: int | None,
    w: int | None,
) -> tuple[int, int]:
    return (both if h is None else h, both if w is None else w)


# =============================================================================
# SHARED SUB-PARAMETERS
# =============================================================================


@dataclass
class FillerParameter(BaseParam):
    """How to initialize a weight blob."""

    type: str = "constant"
    value: float = 0.0
    min: float = 0.0
    max: float = 1.0
    mean: float = 0.0
    std: float = 1.0
    # For gaussian: number of non-zero inputs per output, -1 = dense.
    sparse: int = -1


@dataclass
class TransformationParameter(BaseParam):
    """Per-sample preprocessing applied by data layers."""

    scale: float = 1.0
    mirror: bool = False
    crop_size: int = 0
    mean_value: List[float] = field(default_factory=list)


# =============================================================================
# PER-LAYER PARAMETERS
# =============================================================================


@dataclass
class AccuracyParameter(BaseParam):
    top_k: int = 1


@dataclass
class ArgMaxParameter(BaseParam):
    out_max_val: bool = False
    top_k: int = 1


@dataclass
class ConcatParameter(BaseParam):
    concat_dim: int = 1


@dataclass
class ContrastiveLossParameter(BaseParam):
    margin: float = 1.0


@dataclass
class ConvolutionParameter(BaseParam):
    num_output: int = 0
    bias_term: bool = True
    pad: int = 0
    pad_h: Optional[int] = None
    pad_w: Optional[int] = None
    kernel_size: int = 0
    kernel_h: Optional[int] = None
    kernel_w: Optional[int] = None
    group: int = 1
    stride: int = 1
    stride_h: Optional[int] = None
    stride_w: Optional[int] = None
    weight_filler: FillerParameter = field(default_factory=FillerParameter)
    bias_filler: FillerParameter = field(default_factory=FillerParameter)
    engine: Engine = Engine.DEFAULT

    def kernel_shape(self) -> tuple[int, int]:
        return _two(self.kernel_size, self.kernel_h, self.kernel_w)

    def pad_shape(self) -> tuple[int, int]:
        return _two(self.pad, self.pad_h, self.pad_w)

    def stride_shape(self) -> tuple[int, int]:
        return _two(self.stride, self.stride_h, self.stride_w)


@dataclass
class DataParameter(BaseParam):
    source: str = ""
    batch_size: int = 0
    # Skip a random number of records (up to this many) on first read.
    rand_skip: int = 0
    backend: Backend = Backend.LEVELDB


@dataclass
class DropoutParameter(BaseParam):
    dropout_ratio: float = 0.5


@dataclass
class DummyDataParameter(BaseParam):
    data_filler: List[FillerParameter] = field(default_factory=list)
    num: List[int] = field(default_factory=list)
    channels: List[int] = field(default_factory=list)
    height: List[int] = field(default_factory=list)
    width: List[int] = field(default_factory=list)


@dataclass
class EltwiseParameter(BaseParam):
    operation: EltwiseOp = EltwiseOp.SUM
    coeff: List[float] = field(default_factory=list)
    stable_prod_grad: bool = True


@dataclass
class ExpParameter(BaseParam):
    # y = base ^ (shift + scale * x); base == -1 means e.
    base: float = -1.0
    scale: float = 1.0
    shift: float = 0.0


@dataclass
class HingeLossParameter(BaseParam):
    norm: HingeNorm = HingeNorm.L1


@dataclass
class ImageDataParameter(BaseParam):
    source: str = ""
    batch_size: int = 1
    rand_skip: int = 0
    shuffle: bool = False
    new_height: int = 0
    new_width: int = 0
    is_color: bool = True
    root_folder: str = ""


@dataclass
class InfogainLossParameter(BaseParam):
    # Path to a .npy matrix; a third bottom overrides it.
    source: str = ""


@dataclass
class InnerProductParameter(BaseParam):
    num_output: int = 0
    bias_term: bool = True
    weight_filler: FillerParameter = field(default_factory=FillerParameter)
    bias_filler: FillerParameter = field(default_factory=FillerParameter)


@dataclass
class LRNParameter(BaseParam):
    local_size: int = 5
    alpha: float = 1.0
    beta: float = 0.75
    norm_region: NormRegion = NormRegion.ACROSS_CHANNELS
    k: float = 1.0


@dataclass
class MemoryDataParameter(BaseParam):
    batch_size: int = 0
    channels: int = 0
    height: int = 0
    width: int = 0


@dataclass
class MVNParameter(BaseParam):
    normalize_variance: bool = True
    across_channels: bool = False


@dataclass
class PoolingParameter(BaseParam):
    pool: PoolMethod = PoolMethod.MAX
    pad: int = 0
    pad_h: Optional[int] = None
    pad_w: Optional[int] = None
    kernel_size: int = 0
    kernel_h: Optional[int] = None
    kernel_w: Optional[int] = None
    stride: int = 1
    stride_h: Optional[int] = None
    stride_w: Optional[int] = None
    global_pooling: bool = False
    engine: Engine = Engine.DEFAULT

    def kernel_shape(self) -> tuple[int, int]:
        return _two(self.kernel_size, self.kernel_h, self.kernel_w)

    def pad_shape(self) -> tuple[int, int]:
        return _two(self.pad, self.pad_h, self.pad_w)

    def stride_shape(self) -> tuple[int, int]:
        return _two(self.stride, self.stride_h, self.stride_w)


@dataclass
class PowerParameter(BaseParam):
    # y = (shift + scale * x) ^ power
    power: float = 1.0
    scale: float = 1.0
    shift: float = 0.0


@dataclass
class ReLUParameter(BaseParam):
    negative_slope: float = 0.0
    engine: Engine = Engine.DEFAULT


@dataclass
class SigmoidParameter(BaseParam):
    engine: Engine = Engine.DEFAULT


@dataclass
class SliceParameter(BaseParam):
    slice_dim: int = 1
    slice_point: List[int] = field(default_factory=list)


@dataclass
class SoftmaxParameter(BaseParam):
    engine: Engine = Engine.DEFAULT


@dataclass
class TanHParameter(BaseParam):
    engine: Engine = Engine.DEFAULT


@dataclass
class ThresholdParameter(BaseParam):
    threshold: float = 0.0


# =============================================================================
# LAYER PARAMETER
# =============================================================================


@dataclass
class LayerParameter(BaseParam):
    """Everything needed to construct one layer."""

    name: str = ""
    type: LayerType = LayerType.NONE
    bottom: List[str] = field(default_factory=list)
    top: List[str] = field(default_factory=list)
    loss_weight: List[float] = field(default_factory=list)

    transform_param: TransformationParameter = field(default_factory=TransformationParameter)
    accuracy_param: AccuracyParameter = field(default_factory=AccuracyParameter)
    argmax_param: ArgMaxParameter = field(default_factory=ArgMaxParameter)
    concat_param: ConcatParameter = field(default_factory=ConcatParameter)
    contrastive_loss_param: ContrastiveLossParameter = field(default_factory=ContrastiveLossParameter)
    convolution_param: ConvolutionParameter = field(default_factory=ConvolutionParameter)
    data_param: DataParameter = field(default_factory=DataParameter)
    dropout_param: DropoutParameter = field(default_factory=DropoutParameter)
    dummy_data_param: DummyDataParameter = field(default_factory=DummyDataParameter)
    eltwise_param: EltwiseParameter = field(default_factory=EltwiseParameter)
    exp_param: ExpParameter = field(default_factory=ExpParameter)
    hinge_loss_param: HingeLossParameter = field(default_factory=HingeLossParameter)
    image_data_param: ImageDataParameter = field(default_factory=ImageDataParameter)
    infogain_loss_param: InfogainLossParameter = field(default_factory=InfogainLossParameter)
    inner_product_param: InnerProductParameter = field(default_factory=InnerProductParameter)
    lrn_param: LRNParameter = field(default_factory=LRNParameter)
    memory_data_param: MemoryDataParameter = field(default_factory=MemoryDataParameter)
    mvn_param: MVNParameter = field(default_factory=MVNParameter)
    pooling_param: PoolingParameter = field(default_factory=PoolingParameter)
    power_param: PowerParameter = field(default_factory=PowerParameter)
    relu_param: ReLUParameter = field(default_factory=ReLUParameter)
    sigmoid_param: SigmoidParameter = field(default_factory=SigmoidParameter)
    slice_param: SliceParameter = field(default_factory=SliceParameter)
    softmax_param: SoftmaxParameter = field(default_factory=SoftmaxParameter)
    tanh_param: TanHParameter = field(default_factory=TanHParameter)
    threshold_param: ThresholdParameter = field(default_factory=ThresholdParameter)

    @classmethod
    def from_json(cls, text: str) -> "LayerParameter":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"LayerParameter: invalid JSON ({e})") from e
        if not isinstance(data, Mapping):
            raise ConfigError("LayerParameter: JSON document must be an object")
        return cls.from_dict(data)

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def load_layer_parameters(path: str | Path) -> list[LayerParameter]:
    """Read a JSON file holding a list of layers or ``{"layers": [...]}``."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON ({e})") from e
    if isinstance(data, Mapping):
        data = data.get("layers", data.get("layer"))
    if not isinstance(data, list):
        raise ConfigError(f"{path}: expected a list of layers or an object with a 'layers' list")
    return [
        LayerParameter.from_dict(entry, where=f"{path.name}[{i}]")
        for i, entry in enumerate(data)
    ]
