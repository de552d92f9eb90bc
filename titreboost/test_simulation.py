import unittest

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

import titreboost as tb
import titreboost.simulation as sim


def eye_map(number_strains=2, short=True):
    eye = np.eye(number_strains).ravel()
    return tb.CrossReactivityMap(
        long_term=eye,
        short_term=eye if short else np.zeros_like(eye),
        number_strains=number_strains,
    )


class TestSortInfections(unittest.TestCase):
    def test_sorted_by_time(self):
        times, strains = sim.sort_infections([3.0, 1.0, 2.0], [0, 1, 2])
        self.assertEqual([1.0, 2.0, 3.0], list(times))
        self.assertEqual([1, 2, 0], list(strains))

    def test_ties_keep_order(self):
        _, strains = sim.sort_infections([1.0, 0.0, 1.0], [5, 4, 3])
        self.assertEqual([4, 5, 3], list(strains))


class TestFastIndividualBase(unittest.TestCase):
    def setUp(self):
        self.theta = {"mu": 1.0, "mu_short": 0.0, "wane": 0.0, "tau": 0.5}

    def simulate(self, predicted, theta=None, **kwds):
        kwds.setdefault("antigenic_map", eye_map())
        sim.fast_individual_base(
            predicted, self.theta if theta is None else theta, **kwds
        )
        return predicted

    def test_single_infection(self):
        """
        Long term boost of 2 plus short term boost of 1 that has waned halfway.
        """
        predicted = self.simulate(
            np.zeros(1),
            theta={"mu": 2.0, "mu_short": 1.0, "wane": 0.5, "tau": 0.0},
            infection_times=[0.0],
            infection_strain=[0],
            measurement_strain=[0],
            sample_times=[1.0],
            rows_per_sample=[1],
        )
        self.assertEqual(2.5, predicted[0])

    def test_infection_after_sample_ignored(self):
        predicted = self.simulate(
            np.zeros(1),
            infection_times=[5.0],
            infection_strain=[0],
            measurement_strain=[0],
            sample_times=[1.0],
            rows_per_sample=[1],
        )
        self.assertEqual(0.0, predicted[0])

    def test_infection_at_sample_time_counts(self):
        predicted = self.simulate(
            np.zeros(1),
            infection_times=[1.0],
            infection_strain=[0],
            measurement_strain=[0],
            sample_times=[1.0],
            rows_per_sample=[1],
        )
        self.assertEqual(1.0, predicted[0])

    def test_short_term_fully_waned(self):
        predicted = self.simulate(
            np.zeros(1),
            theta={"mu": 0.0, "mu_short": 1.0, "wane": 0.5, "tau": 0.0},
            infection_times=[0.0],
            infection_strain=[0],
            measurement_strain=[0],
            sample_times=[10.0],
            rows_per_sample=[1],
        )
        self.assertEqual(0.0, predicted[0])

    def test_seniority_in_time_order(self):
        """
        The second infection is discounted by tau.
        """
        predicted = self.simulate(
            np.zeros(2),
            infection_times=[0.0, 1.0],
            infection_strain=[0, 1],
            measurement_strain=[0, 1],
            sample_times=[2.0],
            rows_per_sample=[2],
        )
        self.assertEqual([1.0, 0.5], list(predicted))

    def test_unsorted_infections_change_output(self):
        """
        Seniority is assigned in array order, so infections that aren't sorted by time
        give different titres.
        """
        kwds = dict(measurement_strain=[0, 1], sample_times=[2.0], rows_per_sample=[2])
        sorted_ = self.simulate(
            np.zeros(2), infection_times=[0.0, 1.0], infection_strain=[0, 1], **kwds
        )
        unsorted = self.simulate(
            np.zeros(2), infection_times=[1.0, 0.0], infection_strain=[1, 0], **kwds
        )
        self.assertNotEqual(list(sorted_), list(unsorted))
        self.assertEqual([0.5, 1.0], list(unsorted))

    def test_sorting_restores_output(self):
        kwds = dict(measurement_strain=[0, 1], sample_times=[2.0], rows_per_sample=[2])
        times, strains = sim.sort_infections([1.0, 0.0], [1, 0])
        predicted = self.simulate(
            np.zeros(2), infection_times=times, infection_strain=strains, **kwds
        )
        self.assertEqual([1.0, 0.5], list(predicted))

    def test_multiple_samples(self):
        """
        The first sample (1 row) only sees the first infection. The second sample (2
        rows) sees both.
        """
        predicted = self.simulate(
            np.zeros(3),
            infection_times=[0.0, 1.0],
            infection_strain=[0, 1],
            measurement_strain=[0, 0, 1],
            sample_times=[0.5, 2.0],
            rows_per_sample=[1, 2],
        )
        self.assertEqual([1.0, 1.0, 0.5], list(predicted))

    def test_sample_range(self):
        predicted = self.simulate(
            np.zeros(3),
            infection_times=[0.0, 1.0],
            infection_strain=[0, 1],
            measurement_strain=[0, 0, 1],
            sample_times=[0.5, 2.0],
            rows_per_sample=[1, 2],
            first_sample=1,
            start_row=1,
        )
        self.assertEqual([0.0, 1.0, 0.5], list(predicted))

    def test_accumulates(self):
        predicted = self.simulate(
            np.array([2.0]),
            infection_times=[0.0],
            infection_strain=[0],
            measurement_strain=[0],
            sample_times=[1.0],
            rows_per_sample=[1],
        )
        self.assertEqual(3.0, predicted[0])

    def test_no_infections(self):
        predicted = self.simulate(
            np.array([2.0, 3.0]),
            infection_times=[],
            infection_strain=[],
            measurement_strain=[0, 1],
            sample_times=[1.0],
            rows_per_sample=[2],
        )
        self.assertEqual([2.0, 3.0], list(predicted))

    def test_no_hidden_state(self):
        kwds = dict(
            infection_times=[0.0, 1.0],
            infection_strain=[0, 1],
            measurement_strain=[0, 0, 1],
            sample_times=[0.5, 2.0],
            rows_per_sample=[1, 2],
        )
        first = self.simulate(np.zeros(3), **kwds)
        second = self.simulate(np.zeros(3), **kwds)
        self.assertEqual(list(first), list(second))

    def test_accepts_parameter_record(self):
        predicted = self.simulate(
            np.zeros(1),
            theta=tb.FastSimulationParameters(mu=3.0, mu_short=0.0, wane=0.0, tau=0.0),
            infection_times=[0.0],
            infection_strain=[0],
            measurement_strain=[0],
            sample_times=[1.0],
            rows_per_sample=[1],
        )
        self.assertEqual(3.0, predicted[0])

    def test_too_few_rows(self):
        with self.assertRaisesRegex(tb.ConfigurationError, "measurement rows"):
            self.simulate(
                np.zeros(2),
                infection_times=[0.0],
                infection_strain=[0],
                measurement_strain=[0, 1],
                sample_times=[1.0, 2.0],
                rows_per_sample=[2, 1],
            )

    def test_sample_range_out_of_bounds(self):
        with self.assertRaisesRegex(tb.ConfigurationError, "samples"):
            self.simulate(
                np.zeros(1),
                infection_times=[0.0],
                infection_strain=[0],
                measurement_strain=[0],
                sample_times=[1.0],
                rows_per_sample=[1],
                last_sample=1,
            )

    def test_infection_arrays_different_lengths(self):
        with self.assertRaisesRegex(tb.ConfigurationError, "same length"):
            self.simulate(
                np.zeros(1),
                infection_times=[0.0, 1.0],
                infection_strain=[0],
                measurement_strain=[0],
                sample_times=[1.0],
                rows_per_sample=[1],
            )

    def test_measurement_strain_out_of_range(self):
        with self.assertRaisesRegex(tb.ConfigurationError, "measurement_strain"):
            self.simulate(
                np.zeros(1),
                infection_times=[0.0],
                infection_strain=[0],
                measurement_strain=[2],
                sample_times=[1.0],
                rows_per_sample=[1],
            )

    def test_float_measurement_strain(self):
        with self.assertRaisesRegex(tb.ConfigurationError, "measurement_strain"):
            self.simulate(
                np.zeros(1),
                infection_times=[0.0],
                infection_strain=[0],
                measurement_strain=[0.5],
                sample_times=[1.0],
                rows_per_sample=[1],
            )

    def test_float_infection_strain(self):
        with self.assertRaisesRegex(tb.ConfigurationError, "infection_strain"):
            self.simulate(
                np.zeros(1),
                infection_times=[0.0],
                infection_strain=[0.5],
                measurement_strain=[0],
                sample_times=[1.0],
                rows_per_sample=[1],
            )

    def test_first_sample_after_last_sample(self):
        with self.assertRaisesRegex(tb.ConfigurationError, "samples"):
            self.simulate(
                np.zeros(1),
                infection_times=[0.0],
                infection_strain=[0],
                measurement_strain=[0],
                sample_times=[1.0],
                rows_per_sample=[1],
                first_sample=1,
                last_sample=0,
            )

    def test_overflow_leaves_buffer_unchanged(self):
        """
        The first sample gets a finite titre, the second overflows. Neither is written.
        """
        predicted = np.zeros(2)
        with self.assertRaises(tb.NumericAnomalyError):
            self.simulate(
                predicted,
                theta={"mu": 1e308, "mu_short": 0.0, "wane": 0.0, "tau": 0.0},
                infection_times=[0.0, 1.0],
                infection_strain=[0, 1],
                measurement_strain=[0, 1],
                sample_times=[0.5, 2.0],
                rows_per_sample=[1, 1],
                antigenic_map=tb.CrossReactivityMap(
                    long_term=[1.0, 0.0, 0.0, 10.0],
                    short_term=[0.0, 0.0, 0.0, 0.0],
                    number_strains=2,
                ),
            )
        self.assertEqual([0.0, 0.0], list(predicted))

    def test_missing_wane(self):
        with self.assertRaisesRegex(tb.ConfigurationError, "wane"):
            self.simulate(
                np.zeros(1),
                theta={"mu": 1.0, "mu_short": 0.0, "tau": 0.0},
                infection_times=[0.0],
                infection_strain=[0],
                measurement_strain=[0],
                sample_times=[1.0],
                rows_per_sample=[1],
            )


class TestSimulateIndividual(unittest.TestCase):
    def setUp(self):
        self.theta = pd.Series(
            {"mu": 1.0, "mu_short": 0.0, "wane": 0.0, "tau": 0.0, "sigma1": 0.1}
        )
        self.strain_isolation_times = np.array([2000, 2001, 2002])
        self.kwds = dict(
            infection_history=np.array([1, 0, 1]),
            antigenic_map=eye_map(3, short=False),
            sampling_times=[2001, 2003],
            strain_isolation_times=self.strain_isolation_times,
            measured_strains=[2000, 2002],
        )

    def test_columns(self):
        df = sim.simulate_individual(self.theta, **self.kwds)
        self.assertEqual(["samples", "virus", "titre", "run"], list(df.columns))

    def test_titres(self):
        """
        At 2001 only the 2000 infection has happened. At 2003 both have.
        """
        df = sim.simulate_individual(self.theta, **self.kwds)
        self.assertEqual([2001, 2001, 2003, 2003], list(df["samples"]))
        self.assertEqual([2000, 2002, 2000, 2002], list(df["virus"]))
        self.assertEqual([1.0, 0.0, 1.0, 1.0], list(df["titre"]))

    def test_repeats(self):
        df = sim.simulate_individual(self.theta, repeats=2, **self.kwds)
        self.assertEqual(8, len(df))
        self.assertEqual([1] * 4 + [2] * 4, list(df["run"]))
        self.assertEqual(list(df["titre"][:4]), list(df["titre"][4:]))

    def test_repeats_must_be_positive(self):
        with self.assertRaisesRegex(ValueError, "repeats"):
            sim.simulate_individual(self.theta, repeats=0, **self.kwds)

    def test_single_sampling_time(self):
        kwds = {**self.kwds, "sampling_times": 2003}
        df = sim.simulate_individual(self.theta, **kwds)
        self.assertEqual([1.0, 1.0], list(df["titre"]))

    def test_unknown_measured_strain(self):
        kwds = {**self.kwds, "measured_strains": [2000, 1999]}
        with self.assertRaisesRegex(tb.ConfigurationError, "1999"):
            sim.simulate_individual(self.theta, **kwds)

    def test_infection_history_wrong_shape(self):
        kwds = {**self.kwds, "infection_history": np.array([1, 0])}
        with self.assertRaisesRegex(tb.ConfigurationError, "different shapes"):
            sim.simulate_individual(self.theta, **kwds)

    def test_map_size_must_match_strains(self):
        kwds = {**self.kwds, "antigenic_map": eye_map(2)}
        with self.assertRaisesRegex(tb.ConfigurationError, "antigenic map"):
            sim.simulate_individual(self.theta, **kwds)

    def test_observation_noise(self):
        df = sim.simulate_individual(
            self.theta,
            observation={"error": 1.0, "MAX_TITRE": 1.0},
            rng=np.random.default_rng(1),
            repeats=5,
            **self.kwds,
        )
        self.assertTrue(df["titre"].between(0, 1).all())
        self.assertTrue((df["titre"] == np.floor(df["titre"])).all())

    def test_measurement_bias(self):
        df = sim.simulate_individual(
            self.theta,
            observation=tb.Observation(error=0.01, max_titre=8.0),
            measurement_bias=[0.0, 100.0],
            rng=np.random.default_rng(1),
            **self.kwds,
        )
        self.assertTrue((df.loc[df["virus"] == 2002, "titre"] == 8.0).all())

    def test_measurement_bias_length(self):
        with self.assertRaisesRegex(tb.ConfigurationError, "measurement_bias"):
            sim.simulate_individual(
                self.theta,
                observation=tb.Observation(),
                measurement_bias=[0.0],
                **self.kwds,
            )

    def test_logs_time(self):
        with self.assertLogs("titreboost.simulation", level="INFO") as logs:
            sim.simulate_individual(self.theta, **self.kwds)
        self.assertIn("Calling simulate_individual", logs.output[0])


class TestPlotTitres(unittest.TestCase):
    def tearDown(self):
        plt.close("all")

    def test_line_per_sample(self):
        theta = {"mu": 1.0, "mu_short": 0.0, "wane": 0.0, "tau": 0.0}
        df = sim.simulate_individual(
            theta,
            infection_history=np.array([1, 0, 1]),
            antigenic_map=eye_map(3),
            sampling_times=[2001, 2003],
            strain_isolation_times=np.array([2000, 2001, 2002]),
            measured_strains=[2000, 2001, 2002],
        )
        ax = tb.plotting.plot_titres(df)
        self.assertEqual(2, len(ax.get_lines()))
        self.assertEqual("Titre", ax.get_ylabel())

    def test_labels_include_run(self):
        df = pd.DataFrame(
            dict(samples=[1, 1], virus=[0, 0], titre=[1.0, 2.0], run=[1, 2])
        )
        _, ax = plt.subplots()
        tb.plotting.plot_titres(df, ax=ax)
        labels = [line.get_label() for line in ax.get_lines()]
        self.assertEqual(["1 (1)", "1 (2)"], labels)


if __name__ == "__main__":
    unittest.main()
