"""NumPy training core: layer graph, pooling, updaters and instance storage."""

from .data import REAL_T, BatchAdaptIterator, DataBatch, DataInst, DataIterator, InstIterator
from .errors import (ConfigError, EngineError, FormatError, InvalidKeyError,
                     OutOfRangeError, UsageError)
from .layer import ConnectState, Layer, LayerParam, Node, WeightPair
from .mnist_iterator import MNISTIterator
from .model import (ConvolutionLayer, FlattenLayer, FullConnectLayer, ReLULayer, Sequential,
                    SoftmaxLayer, build_layer_registry, compute_cross_entropy_loss)
from .param_server import LocalParamStore, ParamStore
from .pooling_layer import PoolingLayer, pooling_output_size
from .registry import Registry
from .tensor_vector import InstVector, TensorVector
from .updater import (DATA_KEY_STEP, AdaGradUpdater, AsyncUpdater, SGDUpdater, Updater,
                      build_updater_registry, create_async_updaters, create_updater,
                      decode_layer_index, decode_tag, encode_data_key)

__version__ = "0.1.0"
