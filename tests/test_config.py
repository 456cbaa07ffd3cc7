from __future__ import annotations

import json

import pytest

from strata.config import (
    Backend,
    Engine,
    LayerParameter,
    LayerType,
    PoolMethod,
    load_layer_parameters,
)
from strata.errors import ConfigError


def test_from_dict_parses_enums_case_insensitively():
    param = LayerParameter.from_dict({
        "name": "pool1",
        "type": "pooling",
        "bottom": "conv1",
        "top": ["pool1"],
        "pooling_param": {"pool": "AVE", "kernel_size": 3, "stride": "2", "engine": "CuDNN"},
    })
    assert param.type is LayerType.POOLING
    assert param.bottom == ["conv1"]
    assert param.pooling_param.pool is PoolMethod.AVE
    assert param.pooling_param.stride == 2
    assert param.pooling_param.engine is Engine.CUDNN


def test_integer_layer_type():
    assert LayerParameter.from_dict({"type": 18}).type is LayerType.RELU


def test_unknown_engine_is_kept_verbatim():
    param = LayerParameter.from_dict({"type": "RELU", "relu_param": {"engine": "mkl"}})
    assert param.relu_param.engine == "mkl"


def test_backend_parses_by_name():
    param = LayerParameter.from_dict({"type": "DATA", "data_param": {"backend": "LMDB"}})
    assert param.data_param.backend is Backend.LMDB
    assert LayerParameter.from_dict({"type": "DATA", "data_param": {"backend": 0}}).data_param.backend is Backend.LEVELDB


@pytest.mark.parametrize("config", [
    {"type": "RELU", "relu_parm": {}},
    {"type": "NOT_A_LAYER"},
    {"type": "POOLING", "pooling_param": {"pool": "median"}},
    {"type": "CONVOLUTION", "convolution_param": {"num_output": 1.5}},
    {"type": "CONVOLUTION", "convolution_param": 3},
])
def test_bad_configs_raise_config_error(config):
    with pytest.raises(ConfigError):
        LayerParameter.from_dict(config)


def test_effective_kernel_pad_stride():
    param = LayerParameter.from_dict({
        "type": "CONVOLUTION",
        "convolution_param": {"kernel_size": 3, "kernel_w": 5, "pad": 1, "pad_h": 0, "stride_h": 2},
    })
    conv = param.convolution_param
    assert conv.kernel_shape() == (3, 5)
    assert conv.pad_shape() == (0, 1)
    assert conv.stride_shape() == (2, 1)


def test_to_dict_keeps_only_non_defaults():
    param = LayerParameter.from_dict({
        "name": "fc",
        "type": "INNER_PRODUCT",
        "inner_product_param": {"num_output": 10, "weight_filler": {"type": "xavier"}},
    })
    assert param.to_dict() == {
        "name": "fc",
        "type": "INNER_PRODUCT",
        "inner_product_param": {"num_output": 10, "weight_filler": {"type": "xavier"}},
    }
    assert LayerParameter.from_json(param.to_json()) == param


def test_from_json_rejects_non_objects():
    with pytest.raises(ConfigError):
        LayerParameter.from_json("[1, 2]")
    with pytest.raises(ConfigError):
        LayerParameter.from_json("{not json")


def test_load_layer_parameters(tmp_path):
    layers = [
        {"name": "data", "type": "DUMMY_DATA", "top": ["data"], "dummy_data_param": {"num": [2]}},
        {"name": "relu", "type": "RELU", "bottom": ["data"], "top": ["data"]},
    ]
    as_list = tmp_path / "list.json"
    as_list.write_text(json.dumps(layers))
    as_object = tmp_path / "object.json"
    as_object.write_text(json.dumps({"layers": layers}))

    for path in (as_list, as_object):
        params = load_layer_parameters(path)
        assert [p.type for p in params] == [LayerType.DUMMY_DATA, LayerType.RELU]

    broken = tmp_path / "broken.json"
    broken.write_text(json.dumps({"layers": [{"name": "x", "type": "RELU", "bogus": 1}]}))
    with pytest.raises(ConfigError, match=r"broken.json\[0\]"):
        load_layer_parameters(broken)
