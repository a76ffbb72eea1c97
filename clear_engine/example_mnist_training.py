# clear_engine/example_mnist_training.py
"""
Digit Classification on MNIST with the clear_engine training core.

Main steps:
1. Configure an MNISTIterator from YAML config text and load the data
2. Build a small network: conv -> relu -> max pooling -> flatten -> fullc -> softmax
3. Bind updaters, asynchronous ones through a LocalParamStore if USE_ASYNC is set
4. Train for a few rounds, evaluating on the test set after each round
5. Save the weights and plot training loss / test accuracy

Expects the four standard MNIST files under DATA_DIR.
"""

import logging
import os
import time

import numpy as np

from clear_engine.config import apply_params, parse_config
from clear_engine.mnist_iterator import MNISTIterator
from clear_engine.model import Sequential, build_layer_registry
from clear_engine.param_server import LocalParamStore
from clear_engine.updater import build_updater_registry

DATA_DIR = os.environ.get("MNIST_DIR", "data")

TRAIN_CONFIG = f"""
path_img: {DATA_DIR}/train-images-idx3-ubyte
path_label: {DATA_DIR}/train-labels-idx1-ubyte
input_flat: 0
shuffle: 1
batch_size: 100
"""

TEST_CONFIG = f"""
path_img: {DATA_DIR}/t10k-images-idx3-ubyte
path_label: {DATA_DIR}/t10k-labels-idx1-ubyte
input_flat: 0
batch_size: 100
"""

NET_CONFIG = [
    ('conv', [('nchannel', '8'), ('kernel_size', '3'), ('pad', '1'), ('init_sigma', '0.1')]),
    ('relu', []),
    ('max_pooling', [('kernel_size', '3'), ('stride', '2')]),
    ('flatten', []),
    ('fullc', [('nhidden', '10'), ('random_type', 'xavier')]),
    ('softmax', []),
]

UPDATER_CONFIG = """
lr: 0.1
momentum: 0.9
wd: 0.0001
"lr:schedule": expdecay
"lr:gamma": 0.5
"lr:step": 600
"""

ROUNDS = 3
USE_ASYNC = True
PRINT_EVERY_N_BATCHES = 50


def evaluate(model: Sequential, test_iter: MNISTIterator) -> float:
    correct, total = 0, 0
    for batch in test_iter:
        predictions = np.argmax(model.predict(batch.data), axis=1)
        correct += int(np.sum(predictions == batch.label[:, 0].astype(np.int64)))
        total += batch.batch_size
    return correct / max(total, 1)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")

    # --- 1. Load Data ---
    train_iter = apply_params(MNISTIterator(), parse_config(TRAIN_CONFIG))
    test_iter = apply_params(MNISTIterator(), parse_config(TEST_CONFIG))
    train_iter.init()
    test_iter.init()

    # --- 2. Define the model ---
    layer_registry = build_layer_registry()
    rng = np.random.RandomState(0)
    model = Sequential()
    for layer_type, params in NET_CONFIG:
        model.add(apply_params(layer_registry.create(layer_type, rng), params))

    train_iter.before_first()
    train_iter.next()
    model.init_model(train_iter.value().data.shape)
    print(model.summary())

    # --- 3. Updaters ---
    param_store = LocalParamStore(num_devices=1) if USE_ASYNC else None
    for name, value in parse_config(UPDATER_CONFIG):
        model.set_param(name, value)
    model.create_updaters('sgd', build_updater_registry(), param_store)

    # --- 4. Training Loop ---
    train_losses = []
    test_accuracies = []
    start_time_total = time.time()
    try:
        for round_index in range(ROUNDS):
            round_start_time = time.time()
            model.start_round(round_index)
            round_loss, batch_count = 0.0, 0
            for i, batch in enumerate(train_iter):
                loss = model.train_batch(batch)
                round_loss += loss
                batch_count += 1
                if (i + 1) % PRINT_EVERY_N_BATCHES == 0:
                    logging.info(f"Round {round_index + 1}/{ROUNDS} | Batch {i + 1} | Batch Loss: {loss:.4f}")
            model.update_wait()
            train_losses.append(round_loss / max(batch_count, 1))
            test_accuracies.append(evaluate(model, test_iter))
            logging.info(f"Round {round_index + 1} completed in {time.time() - round_start_time:.2f}s | "
                         f"Average Training Loss: {train_losses[-1]:.4f} | "
                         f"Test Accuracy: {test_accuracies[-1] * 100:.2f}%")
        logging.info(f"Total Training Time: {time.time() - start_time_total:.2f}s")
        model.save_weights("mnist_model.npz")
    finally:
        model.close()

    # --- 5. Plotting ---
    import matplotlib.pyplot as plt

    plt.figure(figsize=(12, 5))
    plt.subplot(1, 2, 1)
    plt.plot(range(1, ROUNDS + 1), train_losses, label='Training Loss', marker='o')
    plt.xlabel('Round')
    plt.ylabel('Loss')
    plt.legend()
    plt.title('Training Loss over Rounds')
    plt.grid(True)

    plt.subplot(1, 2, 2)
    plt.plot(range(1, ROUNDS + 1), test_accuracies, label='Test Accuracy', color='orange', marker='o')
    plt.xlabel('Round')
    plt.ylabel('Accuracy')
    plt.ylim(0, 1.05)
    plt.legend()
    plt.title('Test Accuracy over Rounds')
    plt.grid(True)

    plt.tight_layout()
    plt.show()
