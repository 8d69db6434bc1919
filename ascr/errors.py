"""Exception types raised by the fitting machinery."""


class ConfigurationError(ValueError):
    """Malformed or inconsistent model inputs.

    Always raised before the optimizer is called; never retried.
    """


class NonFiniteLikelihoodError(ArithmeticError):
    """The negative log-likelihood evaluated to NaN or infinity."""

    def __init__(self, message: str, theta=None):
        super().__init__(message)
        self.theta = theta
