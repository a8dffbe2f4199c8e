"""
Times Gauss-Newton fits of exponential decay data for increasing data
lengths with the three Jacobian sources: central finite differences, an
analytic Jacobian and JAX autodiff. The shared Gauss-Newton kernels are
compiled once per data length, so the first fit of each configuration is
excluded from the averages. The autodiff Jacobian is traced again for every
new model, so its times include that compilation.

Run from the repository root with ``python benchmark/speed_comparison.py``.
"""
import time

import numpy as np
import pandas as pd
import jax.numpy as jnp

from gnfit import FunctionModel, Regression


def decay_residuals(p, x, y):
    return p[0] * np.exp(-p[1] * x) - y


def decay_residuals_jax(p, x, y):
    return p[0] * jnp.exp(-p[1] * x) - y


def decay_jacobian(p, x, y):
    e = np.exp(-p[1] * x)
    return np.vstack((e, -p[0] * x * e))


def create_data(dlength, seed, noise_std=0.01):
    rng = np.random.default_rng(seed)
    x = 3 * np.arange(dlength) / dlength
    y = np.exp(-x) + noise_std * rng.normal(size=dlength)
    return x, y


def build_model(method, x, y, p0):
    if method == 'finite difference':
        return FunctionModel(decay_residuals, p0, args=(x, y))
    elif method == 'analytic':
        return FunctionModel(decay_residuals, p0, jac=decay_jacobian,
                             args=(x, y))
    else:
        return FunctionModel(decay_residuals_jax, p0, jac='autodiff',
                             args=(jnp.asarray(x), jnp.asarray(y)))


def time_fits(dlengths, num_fits=10, p0=(1.2, 0.8), reltol=1e-5):
    methods = ['finite difference', 'analytic', 'autodiff']
    rows = []
    for dlength in dlengths:
        for method in methods:
            fit_times = []
            for seed in range(num_fits + 1):
                x, y = create_data(dlength, seed)
                model = build_model(method, x, y, p0)
                reg = Regression(model, reltol=reltol)
                st = time.time()
                params = reg.regression()
                fit_times.append(time.time() - st)
            rows.append({'data_length': dlength,
                         'method': method,
                         'fit_time': np.mean(fit_times[1:]),
                         'iterations': reg.iterations,
                         'a': params[0],
                         'b': params[1]})
    return pd.DataFrame(rows)


if __name__ == '__main__':
    dlengths = [10**k for k in range(2, 7)]
    df = time_fits(dlengths)
    print(df.pivot(index='data_length', columns='method', values='fit_time'))
    print(df)
