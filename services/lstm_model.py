"""
LSTM network for multi-horizon queue forecasting
Two stacked Keras LSTM layers with dropout, a ReLU dense layer and a linear
head with one output per time horizon. Weights start from a random
"pretrained-like" state and are refined online.
"""
import logging
from typing import List, Optional

import numpy as np
import tensorflow as tf
from tensorflow.keras.initializers import RandomNormal
from tensorflow.keras.layers import Input, Dense, LSTM, Dropout
from tensorflow.keras.models import Sequential, clone_model
from tensorflow.keras.optimizers import Adam

logger = logging.getLogger(__name__)


class LSTMFlowModel:
    """
    LSTM(64) -> Dropout -> LSTM(32) -> Dropout -> Dense(16, relu) -> Dense(5)

    Inputs are batches shaped (batch, sequence_length, input_size),
    outputs are shaped (batch, output_size) in normalized queue units.
    """

    def __init__(
        self,
        input_size: int = 9,
        sequence_length: int = 20,
        output_size: int = 5,
        learning_rate: float = 0.001,
        seed: Optional[int] = None
    ):
        self.input_size = input_size
        self.sequence_length = sequence_length
        self.output_size = output_size
        self.learning_rate = learning_rate
        self.seed = seed
        self._network: Optional[tf.keras.Model] = None

    @property
    def built(self) -> bool:
        return self._network is not None

    def _initializer(self, offset: int, stddev: float) -> RandomNormal:
        seed = None if self.seed is None else self.seed + offset
        return RandomNormal(mean=0.0, stddev=stddev, seed=seed)

    def _compile(self, network: tf.keras.Model):
        network.compile(
            optimizer=Adam(learning_rate=self.learning_rate),
            loss='mse',
            metrics=['mae']
        )

    def build(self, stddev: float = 0.1):
        """Create and compile the network (simulated pretrained state)"""
        network = Sequential([
            Input(shape=(self.sequence_length, self.input_size)),
            LSTM(
                64,
                return_sequences=True,
                kernel_initializer=self._initializer(0, stddev),
                recurrent_initializer=self._initializer(1, stddev)
            ),
            Dropout(0.2),
            LSTM(
                32,
                kernel_initializer=self._initializer(2, stddev),
                recurrent_initializer=self._initializer(3, stddev)
            ),
            Dropout(0.2),
            Dense(16, activation='relu', kernel_initializer=self._initializer(4, stddev)),
            Dense(self.output_size, kernel_initializer=self._initializer(5, stddev)),
        ])
        self._compile(network)

        self._network = network
        logger.debug(
            f"LSTM built: inputs={self.input_size}, sequence={self.sequence_length}, "
            f"outputs={self.output_size}, params={network.count_params()}"
        )

    def _check_input(self, xs: np.ndarray) -> np.ndarray:
        if self._network is None:
            raise RuntimeError("Model has not been built")

        xs = np.asarray(xs, dtype=np.float32)
        if xs.ndim == 2:
            xs = xs[np.newaxis, ...]
        if xs.shape[1:] != (self.sequence_length, self.input_size):
            raise ValueError(
                f"Expected input shape (batch, {self.sequence_length}, {self.input_size}), "
                f"got {xs.shape}"
            )
        return xs

    def predict(self, xs: np.ndarray) -> np.ndarray:
        """Inference for a batch (or a single sequence)"""
        xs = self._check_input(xs)
        network = self._network

        # Model.predict must not run concurrently on one model; the direct call can
        return np.asarray(network(xs, training=False))

    def fit(
        self,
        xs: np.ndarray,
        ys: np.ndarray,
        epochs: int = 1,
        batch_size: int = 8,
        shuffle: bool = True
    ) -> List[float]:
        """
        Train a copy of the network with Adam on MSE, then swap it in

        Concurrent predictions keep using the previous network until
        training finishes.

        Returns:
            Training loss per epoch
        """
        xs = self._check_input(xs)
        ys = np.asarray(ys, dtype=np.float32)
        if ys.shape != (xs.shape[0], self.output_size):
            raise ValueError(f"Expected targets shape ({xs.shape[0]}, {self.output_size}), got {ys.shape}")

        trainer = clone_model(self._network)
        trainer.set_weights(self._network.get_weights())
        self._compile(trainer)

        history = trainer.fit(
            xs,
            ys,
            epochs=epochs,
            batch_size=max(1, min(batch_size, xs.shape[0])),
            shuffle=shuffle,
            verbose=0
        )

        self._network = trainer
        return [float(loss) for loss in history.history['loss']]
