# Licensed under the GPLv3 - see LICENSE
import pytest

from ..utils import fixedvalue, raise_collected


class TestFixedValue:
    def setup_class(cls):
        class Fixed:
            @fixedvalue
            def answer(cls):
                return 42

        cls.Fixed = Fixed

    def test_get(self):
        assert self.Fixed.answer == 42
        assert self.Fixed().answer == 42

    def test_set(self):
        fixed = self.Fixed()
        fixed.answer = 42
        with pytest.raises(ValueError, match='can only be set to 42'):
            fixed.answer = 43


class TestRaiseCollected:
    def test_nothing(self):
        raise_collected([], 'nothing')
        raise_collected([None, None], 'nothing')

    def test_single(self):
        error = OSError('only')
        with pytest.raises(OSError) as exc:
            raise_collected([None, error], 'single')
        assert exc.value is error

    def test_several(self):
        errors = [OSError('first'), ValueError('second')]
        with pytest.raises(ExceptionGroup, match='several') as exc:
            raise_collected(errors, 'several')
        assert list(exc.value.exceptions) == errors
