import pytest
import numpy as np
from sklearn.ensemble import ExtraTreesRegressor, RandomForestRegressor

from modules.model_factory import ModelFactory, ResponseTransform
from utils.exceptions import ConfigurationError

def test_create_random_forest():
    model = ModelFactory.create('RandomForestRegressor', {'n_estimators': 10, 'max_features': 2})
    assert isinstance(model, RandomForestRegressor)
    assert model.n_estimators == 10
    assert model.max_features == 2

def test_bootstrap_is_always_on():
    model = ModelFactory.create('ExtraTreesRegressor', {'bootstrap': False})
    assert isinstance(model, ExtraTreesRegressor)
    assert model.bootstrap is True

def test_unknown_parameters_are_dropped():
    model = ModelFactory.create('RandomForestRegressor', {'n_estimators': 5, 'learning_rate': 0.1})
    assert model.n_estimators == 5
    assert not hasattr(model, 'learning_rate')

def test_unknown_model_raises():
    with pytest.raises(ConfigurationError, match="Unknown model name"):
        ModelFactory.create('GradientBoostingRegressor')

def test_available_models():
    assert 'RandomForestRegressor' in ModelFactory.get_available_models()

@pytest.mark.parametrize("name, expected", [
    ('identity', ResponseTransform.IDENTITY),
    ('square_root', ResponseTransform.SQUARE_ROOT),
    ('squareRoot', ResponseTransform.SQUARE_ROOT),
    ('sqrt', ResponseTransform.SQUARE_ROOT),
    (ResponseTransform.IDENTITY, ResponseTransform.IDENTITY),
])
def test_transform_parse(name, expected):
    assert ResponseTransform.parse(name) is expected

def test_transform_parse_unknown():
    with pytest.raises(ValueError):
        ResponseTransform.parse('log')

def test_square_root_forward_and_inverse():
    y = np.array([0.0, 4.0, 100.0])
    forward = ResponseTransform.SQUARE_ROOT.forward(y)
    np.testing.assert_allclose(forward, [0.0, 2.0, 10.0])
    np.testing.assert_allclose(ResponseTransform.SQUARE_ROOT.inverse(forward), y)

def test_identity_is_a_no_op():
    y = np.array([1.5, 2.5])
    np.testing.assert_array_equal(ResponseTransform.IDENTITY.forward(y), y)
    np.testing.assert_array_equal(ResponseTransform.IDENTITY.inverse(y), y)
