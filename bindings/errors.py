class BindingError(Exception):
    """Base class for every error raised inside the binding runtime."""


class UnknownModeError(BindingError):
    pass


class FieldResolutionError(BindingError):
    """A field path could not be resolved against the data store schema."""


class ScriptCompileError(BindingError):
    pass


class ScriptRuntimeError(BindingError):
    pass


class SandboxViolation(ScriptRuntimeError):
    """Script tried to use a construct outside the allowed subset."""


class CircularBindingError(BindingError):
    def __init__(self, chain):
        self.chain = list(chain)
        super().__init__("Circular dependency detected: " + " -> ".join(self.chain))


class EvaluationDepthError(BindingError):
    pass
