# Licensed under the GPLv3 - see LICENSE
from astropy.utils import classproperty


__all__ = ['fixedvalue', 'raise_collected']


class fixedvalue(classproperty):
    """Property that is fixed for all instances of a class.

    Based on `astropy.utils.decorators.classproperty`, but with
    a setter that passes if the value is identical to the fixed
    value, and otherwise raises a `ValueError`.
    """
    def __set__(self, instance, value):
        fixed_value = self.__get__(instance, type(instance))
        if value != fixed_value:
            raise ValueError('fixed property can only be set to {}.'
                             .format(fixed_value))


def raise_collected(errors, message):
    """Raise the errors collected while releasing resources, if any.

    A single error is raised as is; several are combined in an
    `ExceptionGroup` so that none of them gets lost.
    """
    errors = [error for error in errors if error is not None]
    if len(errors) == 1:
        raise errors[0]
    elif errors:
        raise ExceptionGroup(message, errors)
