import re
import secrets


class CodeGenerator:
    """Numeric one-time codes drawn from the OS CSPRNG."""

    def __init__(self, length: int = 6):
        if length < 1:
            raise ValueError("length must be positive")
        self.length = length
        self._upper = 10 ** length
        self._pattern = re.compile(rf"[0-9]{{{length}}}", re.ASCII)

    def generate(self) -> str:
        return f"{secrets.randbelow(self._upper):0{self.length}d}"

    def is_valid_format(self, code) -> bool:
        if not isinstance(code, str):
            return False
        return self._pattern.fullmatch(code) is not None
