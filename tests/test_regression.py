import dataclasses
import logging

import jax
import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from gnfit import (DidNotConvergeError, FailedInitError, FunctionModel,
                   GaussNewton, Regression, RegressionIterator,
                   RegressionOptions, SingularJacobianError,
                   UndefinedResidualError)

from decay_models import (AnalyticExponentialDecayModel, DomainErrorModel,
                          EmptyModel, ExponentialDecayModel, NanModel,
                          NoisyExponentialDecayModel, RaisingModel,
                          SquarePlusOneModel, UnusedParameterModel, decay,
                          decay_jax)


def assert_default_params(params):
    assert_allclose(params[0], 1.0, atol=0.01)
    assert_allclose(params[1], 1.0, atol=0.01)


def test_exact_decay_finite_difference():
    reg = Regression(ExponentialDecayModel(1024), reltol=1e-5)
    params = reg.regression()

    assert params.shape == (2,)
    assert_default_params(params)
    assert reg.result.success
    assert reg.result.status == 1
    assert reg.iterations < reg.maxiters


def test_exact_decay_analytic():
    model = AnalyticExponentialDecayModel(1024 * 16)
    reg = Regression(model, reltol=1e-5)
    params = reg.regression()

    assert_default_params(params)
    assert reg.result.success
    assert reg.iterations < reg.maxiters


def test_exact_decay_autodiff():
    x = 3 * np.arange(256) / 256
    y = decay(x, 1.0, 1.0)

    def fun(p, x, y):
        return decay_jax(x, p[0], p[1]) - y

    model = FunctionModel(fun, [1.2, 0.8], jac='autodiff', args=(x, y))
    reg = Regression(model, reltol=1e-5)
    params = reg.regression()

    assert_default_params(params)
    assert reg.result.success


def test_noisy_decay():
    reg = Regression(NoisyExponentialDecayModel(), reltol=1e-5)
    params = reg.regression()

    assert_allclose(params[0], 1.0, atol=0.05)
    assert_allclose(params[1], 0.9, atol=0.05)
    assert reg.result.success


def test_noisy_decay_ignores_unpaired_sample():
    model = NoisyExponentialDecayModel()
    assert model.point_count == 7
    assert model.residuals(np.array([1.0, 1.0])).shape == (7,)


def test_repeated_runs_are_identical():
    model = ExponentialDecayModel(512)
    reg = Regression(model, reltol=1e-6)
    first = reg.regression()
    second = reg.regression()
    third = Regression(model, reltol=1e-6).regression()

    assert_array_equal(first, second)
    assert_array_equal(first, third)


def test_finite_difference_and_analytic_runs_agree():
    fd = Regression(ExponentialDecayModel(1024), reltol=1e-8).regression()
    analytic = Regression(AnalyticExponentialDecayModel(1024),
                          reltol=1e-8).regression()
    assert_allclose(fd, analytic, atol=1e-6)


def test_first_termination_check_continues():
    reg = Regression(ExponentialDecayModel(32))
    x0 = reg.init_fit()

    # identical to the baseline, still has to continue
    assert reg.check_terminate(x0) is True
    assert reg.iterations == 1
    assert reg.relerr is None

    assert reg.check_terminate(x0) is False
    assert reg.status == 1
    assert reg.relerr == 0

    # the iteration cap is not applied to the first call either
    reg = Regression(ExponentialDecayModel(32), maxiters=1)
    x0 = reg.init_fit()
    assert reg.check_terminate(x0 + 1) is True
    assert reg.check_terminate(x0 + 2) is False
    assert reg.status == 0
    assert reg.iterations == 2


def test_single_iteration_cap_takes_two_steps():
    reg = Regression(SquarePlusOneModel(), maxiters=1)
    reg.regression()

    assert reg.iterations == 2
    assert reg.result.status == 0
    assert reg.result.njev == 2


def test_init_fit_resets_state():
    reg = Regression(ExponentialDecayModel(64), reltol=1e-5)
    reg.regression()
    assert reg.iterations > 0

    x0 = reg.init_fit()
    assert reg.iterations == 0
    assert reg.nfev == 0
    assert reg.result is None
    assert_array_equal(x0, [1.2, 0.8])
    assert_array_equal(reg.testparams, x0)


def test_max_iterations_soft_success():
    reg = Regression(SquarePlusOneModel(), maxiters=8)
    params = reg.regression()

    assert isinstance(params, np.ndarray)
    assert params.shape == (1,)
    assert np.all(np.isfinite(params))
    assert reg.iterations == 8
    assert reg.result.nit == 8
    assert reg.result.status == 0
    assert not reg.result.success
    # one residual evaluation plus a central difference per iteration
    assert reg.result.nfev == 8 * 3
    assert reg.result.njev == 8


def test_max_iterations_strict():
    reg = Regression(SquarePlusOneModel(), maxiters=5, strict=True)
    with pytest.raises(DidNotConvergeError) as excinfo:
        reg.regression()

    assert excinfo.value.result.nit == 5
    assert excinfo.value.result.x.shape == (1,)


def test_strict_mode_passes_when_converged():
    reg = Regression(ExponentialDecayModel(128), reltol=1e-5, strict=True)
    assert_default_params(reg.regression())


def test_singular_jacobian_finite_difference():
    reg = Regression(UnusedParameterModel(64))
    with pytest.raises(SingularJacobianError):
        reg.regression()


def test_singular_jacobian_analytic():
    x = np.linspace(0, 1, 10)

    def fun(p):
        return p[0] * x - 2 * x

    def jac(p):
        return np.vstack((x, np.zeros_like(x)))

    reg = Regression(FunctionModel(fun, [1.0, 1.0], jac=jac))
    with pytest.raises(SingularJacobianError):
        reg.regression()


def test_non_finite_analytic_jacobian_is_undefined():
    x = np.linspace(0, 1, 10)

    def fun(p):
        return p[0] * x - 2 * x

    def jac(p):
        return np.vstack((np.full_like(x, np.nan), x))

    reg = Regression(FunctionModel(fun, [1.0, 1.0], jac=jac))
    with pytest.raises(UndefinedResidualError, match="not finite"):
        reg.regression()


def test_domain_error_becomes_undefined_residual():
    reg = Regression(DomainErrorModel(16, initparams=(1.2, -0.8)))
    with pytest.raises(UndefinedResidualError) as excinfo:
        reg.regression()

    assert isinstance(excinfo.value.__cause__, ValueError)
    assert reg.iterations == 0


def test_model_raised_undefined_residual_propagates():
    reg = Regression(RaisingModel(16))
    with pytest.raises(UndefinedResidualError, match="refuses"):
        reg.regression()
    assert reg.nfev == 1


def test_non_finite_residuals_are_undefined():
    reg = Regression(NanModel(16))
    with pytest.raises(UndefinedResidualError, match="not finite"):
        reg.regression()


def test_wrong_residual_length():
    model = FunctionModel(lambda p: np.ones(3), [1.0])
    model.m = 4
    with pytest.raises(ValueError, match="length 4"):
        Regression(model).regression()


def test_failed_init_without_parameters():
    with pytest.raises(FailedInitError):
        Regression(EmptyModel(16)).regression()


@pytest.mark.parametrize("initparams", [(1.0,), (1.0, 2.0, 3.0),
                                        (1.0, np.nan)])
def test_failed_init_bad_start(initparams):
    model = ExponentialDecayModel(16, initparams=initparams)
    reg = Regression(model)
    with pytest.raises(FailedInitError):
        reg.regression()
    assert reg.iterations == 0


def test_options_captured_per_run():
    reg = Regression(ExponentialDecayModel(64), reltol=1e-2)
    reg.regression()
    loose = reg.iterations
    assert reg.options.reltol == 1e-2

    reg.reltol = 1e-8
    reg.regression()
    assert reg.options.reltol == 1e-8
    assert reg.iterations > loose

    with pytest.raises(dataclasses.FrozenInstanceError):
        reg.options.reltol = 1.0


def test_defaults():
    options = RegressionOptions()
    assert options.reltol == 1e-4
    assert options.maxiters == 32
    assert options.fdrel == 1e-4
    assert not options.verbose


@pytest.mark.parametrize("kwargs", [{'maxiters': 0}, {'maxiters': 2.5},
                                    {'fdrel': 0.0}, {'fdabs': -1.0},
                                    {'reltol': -1.0}, {'verbose': 2}])
def test_invalid_options(kwargs):
    reg = Regression(ExponentialDecayModel(16), **kwargs)
    with pytest.raises(ValueError):
        reg.regression()


def test_tiny_reltol_warns():
    reg = Regression(ExponentialDecayModel(16), reltol=0.0, maxiters=3)
    with pytest.warns(UserWarning, match="reltol"):
        reg.regression()


def test_verbose_trace(capsys):
    reg = Regression(ExponentialDecayModel(64), verbose=True, reltol=1e-5)
    reg.regression()
    out = capsys.readouterr().out

    assert "Iteration" in out
    assert "Rel. error" in out
    assert "`reltol` termination condition is satisfied." in out
    lines = [line for line in out.splitlines()
             if line.split() and line.split()[0].isdigit()]
    assert len(lines) == reg.iterations


def test_silent_by_default(capsys):
    Regression(ExponentialDecayModel(64)).regression()
    assert capsys.readouterr().out == ""


class StandStill(RegressionIterator):

    def refine(self, params, fitter):
        fitter.residuals(params)
        return params


def test_custom_iterator_is_used():
    reg = Regression(ExponentialDecayModel(16), iterator=StandStill())
    params = reg.regression()

    assert_array_equal(params, [1.2, 0.8])
    assert reg.iterations == 2
    assert reg.njev == 0


def test_base_iterator_has_no_step():
    reg = Regression(ExponentialDecayModel(16), iterator=RegressionIterator())
    with pytest.raises(NotImplementedError):
        reg.regression()


def test_default_iterator():
    reg = Regression(ExponentialDecayModel(16))
    assert isinstance(reg.iterator, GaussNewton)


def test_compiled_functions_are_shared():
    reg = Regression(ExponentialDecayModel(16))
    assert reg.cJIT is GaussNewton().cJIT
    assert reg.cJIT is Regression(AnalyticExponentialDecayModel(16)).cJIT


def test_repeated_fit_does_not_recompile(caplog):
    Regression(AnalyticExponentialDecayModel(64), reltol=1e-5).regression()

    with jax.log_compiles(True):
        with caplog.at_level(logging.WARNING):
            params = Regression(AnalyticExponentialDecayModel(64),
                                reltol=1e-5).regression()

    assert_default_params(params)
    assert not [r for r in caplog.records if "Compiling" in r.getMessage()]
